"""
API key lifecycle and request logging.

Keys are shown in plaintext exactly once, at creation. Only their SHA-256
hash and a short visible prefix are stored.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.config import get_settings
from giftledger.core.audit import audit
from giftledger.core.codes import generate_api_key, sha256_hex
from giftledger.core.constants import API_PERMISSIONS
from giftledger.core.errors import (
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from giftledger.core.identity import Scope
from giftledger.core.serializers import ApiKeyOut
from giftledger.database.models import ApiKey, ApiRequestLog, Merchant, to_utc_naive, utcnow

logger = structlog.get_logger(__name__)


def _validate_permissions(permissions: Iterable[str]) -> List[str]:
    permissions = list(dict.fromkeys(permissions))
    for permission in permissions:
        if permission not in API_PERMISSIONS:
            raise ValidationError(f"Invalid permission: {permission}")
    if not permissions:
        raise ValidationError("At least one permission is required")
    return permissions


def _owned_by(scope: Scope, api_key: ApiKey) -> bool:
    if scope.merchant_id is not None:
        return api_key.merchant_id == scope.merchant_id
    return scope.partner_id is not None and api_key.partner_id == scope.partner_id


class ApiKeyService:
    """Create, list, revoke and validate API keys."""

    async def create_key(
        self,
        db: AsyncSession,
        scope: Scope,
        name: str,
        permissions: List[str],
        environment: str = "live",
        rate_limit_per_minute: Optional[int] = None,
        rate_limit_per_day: Optional[int] = None,
        allowed_merchant_ids: Optional[List[uuid.UUID]] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Create an API key bound to the scope's merchant, or to its partner
        when the scope is partner-level.

        Args:
            db: Database session
            scope: Merchant or partner scope of the creating user
            name: Display name
            permissions: Capability strings, non-empty
            environment: ``live`` or ``test``
            rate_limit_per_minute: Defaults to 60
            rate_limit_per_day: Defaults to 10000
            allowed_merchant_ids: Partner keys only; restricts reachable merchants
            expires_at: Optional expiry

        Returns:
            Dict[str, Any]: Key metadata plus ``key``, the plaintext secret

        Raises:
            ValidationError: Bad permissions, environment, limits or scope
        """
        settings = get_settings()
        if scope.merchant_id is None and scope.partner_id is None:
            raise ValidationError("API key must be scoped to either a merchant or a partner")
        if not name or not name.strip():
            raise ValidationError("API key name is required")
        if environment not in ("live", "test"):
            raise ValidationError("Environment must be 'live' or 'test'")
        permissions = _validate_permissions(permissions)

        per_minute = rate_limit_per_minute or settings.rate_limit_per_minute
        per_day = rate_limit_per_day or settings.rate_limit_per_day
        if per_minute <= 0 or per_day <= 0:
            raise ValidationError("Rate limits must be positive")

        allowed: Optional[List[str]] = None
        if allowed_merchant_ids:
            if scope.merchant_id is not None:
                raise ValidationError("allowedMerchantIds only applies to partner-scoped keys")
            allowed = [str(m) for m in allowed_merchant_ids]
            owned = await db.scalars(
                select(Merchant.id).where(
                    Merchant.id.in_(list(allowed_merchant_ids)),
                    Merchant.partner_id == scope.partner_id,
                )
            )
            if len(set(owned.all())) != len(set(allowed)):
                raise ValidationError("allowedMerchantIds must reference this partner's merchants")

        expires_at = to_utc_naive(expires_at)
        plaintext, prefix = generate_api_key(environment)
        api_key = ApiKey(
            merchant_id=scope.merchant_id,
            partner_id=None if scope.merchant_id is not None else scope.partner_id,
            name=name.strip(),
            key_hash=sha256_hex(plaintext),
            key_prefix=prefix,
            environment=environment,
            permissions=permissions,
            allowed_merchant_ids=allowed,
            rate_limit_per_minute=per_minute,
            rate_limit_per_day=per_day,
            status="active",
            expires_at=expires_at,
            created_by=scope.actor_id,
        )
        db.add(api_key)
        await db.flush()

        audit.log(db, scope, "api_key.created", "api_key", api_key.id, {"permissions": permissions})
        logger.info(
            "api_key_created",
            api_key_id=str(api_key.id),
            key_prefix=prefix,
            environment=environment,
        )

        data = ApiKeyOut.dump(api_key)
        data["key"] = plaintext
        return data

    async def list_keys(self, db: AsyncSession, scope: Scope) -> List[ApiKey]:
        if scope.merchant_id is not None:
            condition = ApiKey.merchant_id == scope.merchant_id
        elif scope.partner_id is not None:
            condition = ApiKey.partner_id == scope.partner_id
        else:
            raise ValidationError("Either merchantId or partnerId must be provided")
        result = await db.execute(select(ApiKey).where(condition).order_by(ApiKey.created_at))
        return list(result.scalars().all())

    async def revoke_key(self, db: AsyncSession, scope: Scope, api_key_id: uuid.UUID) -> ApiKey:
        """
        Revoke a key. Revocation is terminal.

        Raises:
            NotFoundError: No such key
            ValidationError: Key already revoked
            ForbiddenError: Key belongs to another merchant or partner
        """
        api_key = await db.get(ApiKey, api_key_id)
        if api_key is None:
            raise NotFoundError("API key not found")
        if not _owned_by(scope, api_key):
            raise ForbiddenError("You do not have permission to revoke this API key")
        if api_key.status == "revoked":
            raise ValidationError("API key is already revoked")

        api_key.status = "revoked"
        api_key.revoked_at = utcnow()
        await db.flush()

        audit.log(db, scope, "api_key.revoked", "api_key", api_key.id)
        logger.info("api_key_revoked", api_key_id=str(api_key.id), key_prefix=api_key.key_prefix)
        return api_key

    async def validate_key(
        self, db: AsyncSession, key: str, now: Optional[datetime] = None
    ) -> ApiKey:
        """
        Resolve a presented secret to its key by hash lookup.

        Touches ``last_used_at`` on success.

        Raises:
            UnauthorizedError: Unknown, revoked or expired key
        """
        now = now or utcnow()
        api_key = await db.scalar(select(ApiKey).where(ApiKey.key_hash == sha256_hex(key)))
        if api_key is None:
            raise UnauthorizedError("Invalid API key", code="INVALID_API_KEY")
        if api_key.status == "revoked":
            raise UnauthorizedError("API key has been revoked", code="API_KEY_REVOKED")
        if api_key.expires_at is not None and api_key.expires_at < now:
            raise UnauthorizedError("API key has expired")

        api_key.last_used_at = now
        await db.flush()
        return api_key

    async def log_request(
        self,
        db: AsyncSession,
        api_key_id: uuid.UUID,
        method: str,
        path: str,
        status_code: int,
        duration_ms: int,
        merchant_id: Optional[uuid.UUID] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ApiRequestLog:
        entry = ApiRequestLog(
            api_key_id=api_key_id,
            merchant_id=merchant_id,
            method=method,
            path=path[:500],
            status_code=status_code,
            duration_ms=duration_ms,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            error_message=error_message,
        )
        db.add(entry)
        await db.flush()
        return entry


api_key_service = ApiKeyService()
