"""
Card store and status state machine.

Cards are issued here and change status here; their balances change only
through the ledger engine.

    active -> suspended | cancelled | expired
    suspended -> active | cancelled
    expired, cancelled: terminal
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.config import get_settings
from giftledger.core.audit import audit
from giftledger.core.codes import (
    generate_card_number,
    generate_redemption_code,
    hash_secret,
    normalize_redemption_code,
)
from giftledger.core.constants import CARD_STATUS_EVENTS, CARD_STATUS_TRANSITIONS, CARD_TYPES
from giftledger.core.errors import (
    CardExpiredError,
    CardInactiveError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from giftledger.core.identity import Scope
from giftledger.core.pagination import Page, paginate
from giftledger.core.serializers import CardOut
from giftledger.core.webhooks import dispatch_event
from giftledger.database.models import Card, Customer, Merchant, to_utc_naive, utcnow
from giftledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class IssuedCard:
    """A freshly created card with the redemption code, shown exactly once."""

    card: Card
    redemption_code: str

    def to_dict(self) -> Dict[str, Any]:
        data = CardOut.dump(self.card)
        data["redemptionCode"] = self.redemption_code
        return data


def validate_card_usable(card: Card, now: Optional[datetime] = None) -> None:
    """
    Check a card can take part in a financial operation.

    Raises:
        CardExpiredError: Card is expired, or past its expiry date
        CardInactiveError: Card is in any other non-active status
    """
    now = now or utcnow()
    if card.status == "expired":
        raise CardExpiredError("Card has expired")
    if card.status != "active":
        raise CardInactiveError("Card is not active")
    if card.expires_at is not None and card.expires_at <= now:
        raise CardExpiredError("Card has expired")


async def get_merchant(db: AsyncSession, merchant_id: uuid.UUID) -> Merchant:
    merchant = await db.get(Merchant, merchant_id)
    if merchant is None:
        raise NotFoundError("Merchant not found")
    return merchant


async def load_card(
    db: AsyncSession, scope: Scope, card_id: uuid.UUID, for_update: bool = False
) -> Card:
    """
    Fetch a card belonging to the scope's merchant.

    With ``for_update`` the row is locked until the surrounding transaction
    ends and re-read from the database even if already in the session.

    Raises:
        NotFoundError: No such card
        ForbiddenError: Card belongs to another merchant
    """
    stmt = select(Card).where(Card.id == card_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    card = await db.scalar(stmt)
    if card is None:
        raise NotFoundError("Card not found")
    if card.merchant_id != scope.require_merchant():
        raise ForbiddenError("Card does not belong to this merchant")
    return card


class CardService:
    """Issues cards, reads them, and moves them through their statuses."""

    @property
    def settings(self):
        return get_settings()

    async def create_card(
        self,
        db: AsyncSession,
        scope: Scope,
        type: str = "digital",
        initial_balance: int = 0,
        currency: Optional[str] = None,
        customer_id: Optional[uuid.UUID] = None,
        expires_at: Optional[datetime] = None,
        pin: Optional[str] = None,
        track_data: Optional[str] = None,
        recipient_name: Optional[str] = None,
        recipient_email: Optional[str] = None,
        sender_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> IssuedCard:
        """
        Issue a new active card.

        The initial balance is the card's starting point, not a ledger
        entry. Currency and expiry default from the merchant's settings.

        Args:
            db: Database session
            scope: Merchant scope
            type: ``physical`` or ``digital``
            initial_balance: Starting balance in cents
            currency: Currency code (defaults to merchant currency)
            customer_id: Optional owning customer of the same merchant
            expires_at: Optional expiry (defaults to now + merchant expiry days)
            pin: Optional 4-digit PIN, stored hashed
            track_data: Optional magstripe track data, stored hashed

        Returns:
            IssuedCard: Card plus its plaintext redemption code

        Raises:
            ValidationError: Invalid type, balance, PIN or customer
        """
        merchant_id = scope.require_merchant()
        merchant = await get_merchant(db, merchant_id)

        if type not in CARD_TYPES:
            raise ValidationError(f"Invalid card type: {type}")
        if initial_balance < 0:
            raise ValidationError("Initial balance must be non-negative")
        if initial_balance > merchant.max_card_balance:
            raise ValidationError(
                f"Initial balance exceeds maximum allowed ({merchant.max_card_balance} cents)"
            )
        if pin is not None and not (pin.isdigit() and len(pin) == 4):
            raise ValidationError("PIN must be 4 digits")

        if customer_id is not None:
            customer = await db.get(Customer, customer_id)
            if customer is None or customer.merchant_id != merchant_id:
                raise ValidationError("Customer not found for this merchant")

        now = utcnow()
        expires_at = to_utc_naive(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Expiry date must be in the future")
        if expires_at is None and merchant.card_expiration_days:
            expires_at = now + timedelta(days=merchant.card_expiration_days)

        redemption_code = generate_redemption_code()
        card = Card(
            merchant_id=merchant_id,
            customer_id=customer_id,
            card_number=generate_card_number(),
            code_hash=hash_secret(redemption_code),
            pin_hash=hash_secret(pin) if pin else None,
            track_data_hash=hash_secret(track_data) if track_data else None,
            type=type,
            status="active",
            initial_balance=initial_balance,
            current_balance=initial_balance,
            currency=(currency or merchant.currency or self.settings.default_currency).upper(),
            recipient_name=recipient_name,
            recipient_email=recipient_email,
            sender_name=sender_name,
            message=message,
            expires_at=expires_at,
            activated_at=now,
        )
        db.add(card)
        await db.flush()

        await dispatch_event(db, merchant_id, "card.created", CardOut.dump(card))
        audit.log(db, scope, "card.created", "card", card.id, {"initialBalance": initial_balance})

        logger.info(
            "card_created",
            card_id=str(card.id),
            merchant_id=str(merchant_id),
            type=type,
            initial_balance=initial_balance,
        )
        return IssuedCard(card=card, redemption_code=redemption_code)

    async def get_card(self, db: AsyncSession, scope: Scope, card_id: uuid.UUID) -> Card:
        return await load_card(db, scope, card_id)

    async def find_by_code(self, db: AsyncSession, scope: Scope, code: str) -> Card:
        card = await db.scalar(
            select(Card).where(Card.code_hash == hash_secret(normalize_redemption_code(code)))
        )
        if card is None or card.merchant_id != scope.require_merchant():
            raise NotFoundError("Card not found")
        return card

    async def find_by_track_data(self, db: AsyncSession, scope: Scope, track_data: str) -> Card:
        card = await db.scalar(
            select(Card).where(
                Card.track_data_hash == hash_secret(track_data),
                Card.merchant_id == scope.require_merchant(),
            )
        )
        if card is None:
            raise NotFoundError("Card not found")
        return card

    async def list_cards(
        self,
        db: AsyncSession,
        scope: Scope,
        status: Optional[str] = None,
        customer_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        stmt = select(Card).where(Card.merchant_id == scope.require_merchant())
        if status:
            if status not in CARD_STATUS_TRANSITIONS:
                raise ValidationError(f"Invalid card status: {status}")
            stmt = stmt.where(Card.status == status)
        if customer_id is not None:
            stmt = stmt.where(Card.customer_id == customer_id)
        return await paginate(db, stmt, Card, limit, cursor)

    async def check_balance(self, db: AsyncSession, card_number: str) -> Optional[Dict[str, Any]]:
        """Public balance lookup; reveals only balance, currency and status."""
        card = await db.scalar(select(Card).where(Card.card_number == card_number.strip().upper()))
        if card is None:
            return None
        return {
            "currentBalance": card.current_balance,
            "currency": card.currency,
            "status": card.status,
        }

    async def update_status(
        self, db: AsyncSession, scope: Scope, card_id: uuid.UUID, status: str
    ) -> Card:
        """
        Move a card to a new status.

        Raises:
            ValidationError: Transition not allowed (expired and cancelled
                cards can never be reactivated)
        """
        if status not in CARD_STATUS_TRANSITIONS or status in ("expired", "inactive"):
            raise ValidationError(f"Invalid card status: {status}")

        card = await load_card(db, scope, card_id, for_update=True)
        if card.status == status:
            return card

        if status == "active" and card.status in ("cancelled", "expired"):
            article = "an" if card.status == "expired" else "a"
            raise ValidationError(f"Cannot reactivate {article} {card.status} card")
        if status not in CARD_STATUS_TRANSITIONS[card.status]:
            raise ValidationError(f"Cannot change card status from {card.status} to {status}")

        previous = card.status
        card.status = status
        if status == "active" and card.activated_at is None:
            card.activated_at = utcnow()
        await db.flush()

        await dispatch_event(db, card.merchant_id, CARD_STATUS_EVENTS[status], CardOut.dump(card))
        audit.log(
            db, scope, "card.status_changed", "card", card.id, {"from": previous, "to": status}
        )
        logger.info(
            "card_status_changed",
            card_id=str(card.id),
            from_status=previous,
            to_status=status,
        )
        return card

    async def expire_cards(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> int:
        """
        Expire up to batch_size active cards whose expiry has passed.

        Only ever narrows the active set, so overlapping runs are safe.

        Returns:
            int: Number of cards expired
        """
        now = now or utcnow()
        result = await db.execute(
            select(Card)
            .where(
                Card.status == "active",
                Card.expires_at.is_not(None),
                Card.expires_at <= now,
            )
            .order_by(Card.expires_at)
            .limit(batch_size or self.settings.sweep_batch_size)
            .with_for_update(skip_locked=True)
        )
        cards = list(result.scalars().all())
        for card in cards:
            card.status = "expired"
        await db.flush()

        for card in cards:
            await dispatch_event(db, card.merchant_id, "card.expired", CardOut.dump(card))
            audit.log(
                db,
                Scope(role="system", merchant_id=card.merchant_id, actor_type="system"),
                "card.expired",
                "card",
                card.id,
            )

        if cards:
            logger.info("cards_expired", count=len(cards))
        metrics.record_sweep("card_expiry", len(cards), time.time())
        return len(cards)


card_service = CardService()
