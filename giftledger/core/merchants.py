"""
Merchants and the partner organisations that group them.

Whoever creates a merchant or partner becomes its owner. Details and card
program settings can only be changed by owners and admins; settings changes
are partial and land in the audit trail.
"""
import re
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.config import get_settings
from giftledger.core.audit import audit
from giftledger.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from giftledger.core.identity import CallerIdentity, Scope, resolve_partner_scope
from giftledger.core.pagination import Page, paginate
from giftledger.database.models import Merchant, MerchantMember, Partner, PartnerMember

logger = structlog.get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

SETTINGS_FIELDS = (
    "currency",
    "max_card_balance",
    "min_load_amount",
    "max_load_amount",
    "card_expiration_days",
)


def validate_slug(slug: str) -> str:
    slug = (slug or "").strip()
    if not SLUG_PATTERN.match(slug):
        raise ValidationError("Slug must contain only lowercase letters, numbers, and hyphens")
    return slug


async def _slug_taken(db: AsyncSession, model: Any, slug: str) -> bool:
    return bool(await db.scalar(select(func.count()).select_from(model).where(model.slug == slug)))


def _check_settings(values: Dict[str, Any]) -> None:
    """Validate a merged set of card program settings."""
    if not CURRENCY_PATTERN.match(values["currency"] or ""):
        raise ValidationError("Currency must be a 3-letter ISO code")
    for name in ("max_card_balance", "min_load_amount", "max_load_amount"):
        if values[name] <= 0:
            raise ValidationError(f"{name} must be a positive amount in cents")
    if values["card_expiration_days"] is not None and values["card_expiration_days"] <= 0:
        raise ValidationError("card_expiration_days must be a positive number of days")
    if values["min_load_amount"] > values["max_load_amount"]:
        raise ValidationError("min_load_amount cannot exceed max_load_amount")
    if values["max_load_amount"] > values["max_card_balance"]:
        raise ValidationError("max_load_amount cannot exceed max_card_balance")


class MerchantService:
    """Create, list and configure merchants."""

    @property
    def settings(self):
        return get_settings()

    async def create_merchant(
        self,
        db: AsyncSession,
        identity: CallerIdentity,
        name: str,
        slug: str,
        email: Optional[str] = None,
        partner_id: Optional[uuid.UUID] = None,
    ) -> Merchant:
        """
        Create a merchant with the default card program settings.

        The creating user is added as the merchant's owner. A merchant can
        only be attached to a partner the user has access to.

        Raises:
            ValidationError: Malformed slug
            ConflictError: Slug already used by another merchant
            NotFoundError: Partner does not exist
            ForbiddenError: User has no access to the partner
        """
        slug = validate_slug(slug)
        if partner_id is not None:
            await resolve_partner_scope(db, identity, partner_id)
        if await _slug_taken(db, Merchant, slug):
            raise ConflictError("A merchant with this slug already exists")

        settings = self.settings
        merchant = Merchant(
            name=name,
            slug=slug,
            email=email,
            partner_id=partner_id,
            currency=settings.default_currency,
            max_card_balance=settings.default_max_card_balance,
            min_load_amount=settings.default_min_load_amount,
            max_load_amount=settings.default_max_load_amount,
            card_expiration_days=settings.default_card_exp_days,
        )
        db.add(merchant)
        await db.flush()
        db.add(MerchantMember(merchant_id=merchant.id, user_id=identity.user_id, role="owner"))
        await db.flush()

        scope = Scope(
            role="owner",
            merchant_id=merchant.id,
            partner_id=partner_id,
            actor_id=identity.user_id,
            actor_type="user",
        )
        audit.log(db, scope, "merchant.created", "merchant", merchant.id, {"slug": slug})
        logger.info(
            "merchant_created",
            merchant_id=str(merchant.id),
            partner_id=str(partner_id) if partner_id else None,
            user_id=identity.user_id,
        )
        return merchant

    async def get_merchant(self, db: AsyncSession, scope: Scope) -> Merchant:
        merchant = await db.get(Merchant, scope.require_merchant())
        if merchant is None:
            raise NotFoundError("Merchant not found")
        return merchant

    async def list_merchants(
        self,
        db: AsyncSession,
        identity: CallerIdentity,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        """
        List the merchants a portal user can reach, newest first.

        Platform admins see every merchant. Everyone else sees the merchants
        they are members of plus those of their partners.
        """
        stmt = select(Merchant)
        if not identity.is_admin:
            memberships = select(MerchantMember.merchant_id).where(
                MerchantMember.user_id == identity.user_id
            )
            partners = select(PartnerMember.partner_id).where(
                PartnerMember.user_id == identity.user_id
            )
            stmt = stmt.where(
                or_(Merchant.id.in_(memberships), Merchant.partner_id.in_(partners))
            )
        return await paginate(db, stmt, Merchant, limit, cursor)

    async def list_partner_merchants(
        self,
        db: AsyncSession,
        scope: Scope,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        if scope.partner_id is None:
            raise ValidationError("A partner scope is required for this operation")
        stmt = select(Merchant).where(Merchant.partner_id == scope.partner_id)
        return await paginate(db, stmt, Merchant, limit, cursor)

    async def update_merchant(
        self,
        db: AsyncSession,
        scope: Scope,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Merchant:
        if not scope.is_elevated:
            raise ForbiddenError("Only owners and admins can update merchant details")
        merchant = await self.get_merchant(db, scope)

        changes: Dict[str, Any] = {}
        if name is not None:
            merchant.name = changes["name"] = name
        if email is not None:
            merchant.email = changes["email"] = email
        await db.flush()

        audit.log(db, scope, "merchant.updated", "merchant", merchant.id, changes)
        logger.info("merchant_updated", merchant_id=str(merchant.id), fields=sorted(changes))
        return merchant

    async def update_settings(
        self, db: AsyncSession, scope: Scope, **changes: Any
    ) -> Merchant:
        """
        Merge new card program settings into the merchant's current ones.

        Only the settings named in ``changes`` with a non-None value are
        replaced. The merged result must keep
        min_load_amount <= max_load_amount <= max_card_balance.

        Raises:
            ForbiddenError: Caller is not an owner or admin
            ValidationError: Unknown setting or invalid merged settings
        """
        if not scope.is_elevated:
            raise ForbiddenError("Only owners and admins can update settings")
        unknown = set(changes) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        merchant = await self.get_merchant(db, scope)

        changes = {name: value for name, value in changes.items() if value is not None}
        if "currency" in changes:
            changes["currency"] = changes["currency"].upper()
        merged = {name: getattr(merchant, name) for name in SETTINGS_FIELDS}
        merged.update(changes)
        _check_settings(merged)

        for name, value in changes.items():
            setattr(merchant, name, value)
        await db.flush()

        audit.log(db, scope, "merchant.settings_updated", "merchant", merchant.id, changes)
        logger.info(
            "merchant_settings_updated", merchant_id=str(merchant.id), fields=sorted(changes)
        )
        return merchant


class PartnerService:
    """Create, list and update partner organisations."""

    async def create_partner(
        self,
        db: AsyncSession,
        identity: CallerIdentity,
        name: str,
        slug: str,
        email: Optional[str] = None,
    ) -> Partner:
        """
        Create a partner organisation owned by the calling user.

        Raises:
            ValidationError: Malformed slug
            ConflictError: Slug already used by another partner
        """
        slug = validate_slug(slug)
        if await _slug_taken(db, Partner, slug):
            raise ConflictError("A partner with this slug already exists")

        partner = Partner(name=name, slug=slug, email=email)
        db.add(partner)
        await db.flush()
        db.add(PartnerMember(partner_id=partner.id, user_id=identity.user_id, role="owner"))
        await db.flush()

        logger.info("partner_created", partner_id=str(partner.id), user_id=identity.user_id)
        return partner

    async def get_partner(self, db: AsyncSession, scope: Scope) -> Partner:
        partner = await db.get(Partner, scope.partner_id) if scope.partner_id else None
        if partner is None:
            raise NotFoundError("Partner not found")
        return partner

    async def list_partners(
        self,
        db: AsyncSession,
        identity: CallerIdentity,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        if not identity.is_admin:
            raise ForbiddenError("Only platform admins can list partners")
        return await paginate(db, select(Partner), Partner, limit, cursor)

    async def update_partner(
        self,
        db: AsyncSession,
        scope: Scope,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Partner:
        if not scope.is_elevated:
            raise ForbiddenError("Only partner owners and admins can update details")
        partner = await self.get_partner(db, scope)

        changes: Dict[str, Any] = {}
        if name is not None:
            partner.name = changes["name"] = name
        if email is not None:
            partner.email = changes["email"] = email
        await db.flush()

        audit.log(db, scope, "partner.updated", "partner", partner.id, changes)
        logger.info("partner_updated", partner_id=str(partner.id), fields=sorted(changes))
        return partner


merchant_service = MerchantService()
partner_service = PartnerService()
