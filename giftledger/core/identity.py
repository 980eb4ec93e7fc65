"""
Caller identity and scope resolution.

Every ledger, card and customer operation receives an explicit Scope built
here, either from a portal user (identity supplied by the upstream auth
provider) or from a validated API key.
"""
import uuid
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.core.constants import API_PERMISSIONS, ELEVATED_ROLES
from giftledger.core.errors import ForbiddenError, NotFoundError, ValidationError
from giftledger.database.models import (
    ApiKey,
    Merchant,
    MerchantMember,
    Partner,
    PartnerMember,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Signed-in portal user as reported by the identity provider."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Scope:
    """
    Authorized scope an operation runs under.

    Attributes:
        role: Effective role (owner/admin/staff/member, or ``api_key``)
        merchant_id: Merchant the operation is bound to, if any
        partner_id: Partner the operation is bound to, if any
        permissions: Capability strings granted to the caller
        actor_id: User id or API key id, recorded as performedBy
        actor_type: ``user``, ``api_key`` or ``system``
    """

    role: str
    merchant_id: Optional[uuid.UUID] = None
    partner_id: Optional[uuid.UUID] = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    actor_id: Optional[str] = None
    actor_type: str = "system"

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def require_merchant(self) -> uuid.UUID:
        if self.merchant_id is None:
            raise ValidationError("A merchant scope is required for this operation")
        return self.merchant_id

    def require_elevated(self) -> None:
        if not self.is_elevated:
            raise ForbiddenError("Owner or admin role required")


SYSTEM_SCOPE = Scope(role="system", actor_type="system")


async def resolve_merchant_scope(
    db: AsyncSession, identity: CallerIdentity, merchant_id: uuid.UUID
) -> Scope:
    """
    Resolve a portal user's access to a merchant.

    Platform admins act as owner on every merchant. Otherwise a merchant
    membership gives its role, and membership of the merchant's partner
    gives admin.

    Raises:
        NotFoundError: Merchant does not exist
        ForbiddenError: User has no access to the merchant
    """
    merchant = await db.get(Merchant, merchant_id)
    if merchant is None:
        raise NotFoundError("Merchant not found")

    def scope(role: str) -> Scope:
        return Scope(
            role=role,
            merchant_id=merchant.id,
            partner_id=merchant.partner_id,
            permissions=frozenset(API_PERMISSIONS),
            actor_id=identity.user_id,
            actor_type="user",
        )

    if identity.is_admin:
        return scope("owner")

    membership = await db.scalar(
        select(MerchantMember).where(
            MerchantMember.merchant_id == merchant_id,
            MerchantMember.user_id == identity.user_id,
        )
    )
    if membership is not None:
        return scope(membership.role)

    if merchant.partner_id is not None:
        partner_membership = await db.scalar(
            select(PartnerMember).where(
                PartnerMember.partner_id == merchant.partner_id,
                PartnerMember.user_id == identity.user_id,
            )
        )
        if partner_membership is not None:
            return scope("admin")

    logger.warning(
        "merchant_access_denied",
        user_id=identity.user_id,
        merchant_id=str(merchant_id),
    )
    raise ForbiddenError("You do not have access to this merchant")


async def resolve_partner_scope(
    db: AsyncSession, identity: CallerIdentity, partner_id: uuid.UUID
) -> Scope:
    """Resolve a portal user's access to a partner organisation."""
    partner = await db.get(Partner, partner_id)
    if partner is None:
        raise NotFoundError("Partner not found")

    if identity.is_admin:
        role = "owner"
    else:
        membership = await db.scalar(
            select(PartnerMember).where(
                PartnerMember.partner_id == partner_id,
                PartnerMember.user_id == identity.user_id,
            )
        )
        if membership is None:
            raise ForbiddenError("You do not have access to this partner organization")
        role = membership.role

    return Scope(
        role=role,
        partner_id=partner.id,
        permissions=frozenset(API_PERMISSIONS),
        actor_id=identity.user_id,
        actor_type="user",
    )


async def resolve_api_key_scope(
    db: AsyncSession, api_key: ApiKey, requested_merchant_id: Optional[str] = None
) -> Scope:
    """
    Resolve the merchant an API key request acts on.

    A merchant key always uses its own merchant. A partner key must name a
    merchant, which must be in its allow-list when one is configured and
    must belong to the key's partner.

    Raises:
        ValidationError: Partner key without a merchant id
        ForbiddenError: Merchant outside the key's reach
    """
    permissions = frozenset(api_key.permissions or [])
    actor_id = str(api_key.id)

    if api_key.merchant_id is not None:
        return Scope(
            role="api_key",
            merchant_id=api_key.merchant_id,
            permissions=permissions,
            actor_id=actor_id,
            actor_type="api_key",
        )

    if not requested_merchant_id:
        raise ValidationError("merchantId is required for partner-scoped API keys")

    try:
        merchant_id = uuid.UUID(str(requested_merchant_id))
    except ValueError:
        raise ValidationError("merchantId is not a valid identifier")

    allowed = api_key.allowed_merchant_ids or []
    if allowed and str(merchant_id) not in allowed:
        raise ForbiddenError("API key does not have access to this merchant")

    merchant = await db.get(Merchant, merchant_id)
    if merchant is None or merchant.partner_id != api_key.partner_id:
        raise ForbiddenError("API key does not have access to this merchant")

    return Scope(
        role="api_key",
        merchant_id=merchant.id,
        partner_id=api_key.partner_id,
        permissions=permissions,
        actor_id=actor_id,
        actor_type="api_key",
    )
