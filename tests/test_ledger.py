"""
Tests for the ledger engine.
"""
import uuid
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import func, select

from giftledger.core.errors import (
    CardExpiredError,
    CardInactiveError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from giftledger.core.ledger import ledger, signed_amount
from giftledger.database.models import Card, Transaction, WebhookDelivery, WebhookEndpoint, utcnow
from tests.conftest import scope_for


async def balance_of(db: Any, card_id: uuid.UUID) -> int:
    card = await db.scalar(
        select(Card).where(Card.id == card_id).execution_options(populate_existing=True)
    )
    return card.current_balance


async def assert_history_matches_balance(db: Any, card_id: uuid.UUID) -> None:
    card = await db.scalar(
        select(Card).where(Card.id == card_id).execution_options(populate_existing=True)
    )
    history = await ledger.card_history(db, card_id)
    assert card.initial_balance + sum(signed_amount(t) for t in history) == card.current_balance


class TestLoad:
    """Test suite for loading funds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_adds_funds(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test a load raises the balance and records the snapshots."""
        issued = await make_card(owner_scope, initial_balance=1000)

        txn = await ledger.load(db, owner_scope, issued.card.id, 500)
        await db.commit()

        assert txn.type == "load"
        assert txn.amount == 500
        assert txn.balance_before == 1000
        assert txn.balance_after == 1500
        assert txn.performed_by == "user_owner"
        assert txn.performed_by_type == "user"
        assert await balance_of(db, issued.card.id) == 1500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_below_minimum(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test loads under the merchant minimum are rejected."""
        issued = await make_card(owner_scope)

        with pytest.raises(InvalidAmountError, match="at least 100 cents"):
            await ledger.load(db, owner_scope, issued.card.id, 50)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_above_maximum(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test loads over the merchant maximum are rejected."""
        issued = await make_card(owner_scope)

        with pytest.raises(InvalidAmountError, match="must not exceed 50000 cents"):
            await ledger.load(db, owner_scope, issued.card.id, 50001)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_exceeding_balance_cap(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test a load may not push the balance over the card maximum."""
        issued = await make_card(owner_scope, initial_balance=90000)
        card_id = issued.card.id

        with pytest.raises(InvalidAmountError, match="exceed maximum allowed"):
            await ledger.load(db, owner_scope, card_id, 20000)
        await db.rollback()

        assert await balance_of(db, card_id) == 90000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_non_positive_amount(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test zero and negative loads are rejected."""
        issued = await make_card(owner_scope)

        with pytest.raises(InvalidAmountError):
            await ledger.load(db, owner_scope, issued.card.id, 0)
        with pytest.raises(InvalidAmountError):
            await ledger.load(db, owner_scope, issued.card.id, -100)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_suspended_card(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test a suspended card cannot be loaded."""
        issued = await make_card(owner_scope)
        issued.card.status = "suspended"
        await db.commit()

        with pytest.raises(CardInactiveError):
            await ledger.load(db, owner_scope, issued.card.id, 500)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_card_past_expiry(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test a card past its expiry date is treated as expired before the sweep runs."""
        issued = await make_card(owner_scope)
        issued.card.expires_at = utcnow() - timedelta(days=1)
        await db.commit()

        with pytest.raises(CardExpiredError):
            await ledger.load(db, owner_scope, issued.card.id, 500)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_other_merchants_card(
        self, db: Any, owner_scope: Any, other_merchant: Any, make_card: Any
    ) -> None:
        """Test a card of another merchant is off limits."""
        issued = await make_card(scope_for(other_merchant))

        with pytest.raises(ForbiddenError):
            await ledger.load(db, owner_scope, issued.card.id, 500)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_unknown_card(self, db: Any, owner_scope: Any, merchant: Any) -> None:
        """Test loading a missing card."""
        with pytest.raises(NotFoundError, match="Card not found"):
            await ledger.load(db, owner_scope, uuid.uuid4(), 500)


class TestRedeemAndRefund:
    """Test suite for redemption and refunds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_issue_load_redeem_refund_scenario(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test the full issue, load, redeem and refund walk-through."""
        issued = await make_card(owner_scope, initial_balance=2500)
        card_id = issued.card.id

        await ledger.load(db, owner_scope, card_id, 500)
        await db.commit()
        assert await balance_of(db, card_id) == 3000

        redeem = await ledger.redeem(db, owner_scope, card_id, 1000)
        await db.commit()
        assert redeem.type == "redeem"
        assert redeem.balance_before == 3000
        assert redeem.balance_after == 2000
        assert await balance_of(db, card_id) == 2000

        refund = await ledger.refund(db, owner_scope, redeem.id)
        await db.commit()
        assert refund.type == "refund"
        assert refund.amount == 1000
        assert refund.linked_transaction_id == redeem.id
        assert await balance_of(db, card_id) == 3000

        with pytest.raises(ValidationError, match="already been refunded"):
            await ledger.refund(db, owner_scope, redeem.id)
        await db.rollback()
        assert await balance_of(db, card_id) == 3000

        refunds = await db.scalar(
            select(func.count()).select_from(Transaction).where(Transaction.type == "refund")
        )
        assert refunds == 1
        await assert_history_matches_balance(db, card_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_insufficient_balance(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test a redemption larger than the balance fails and writes nothing."""
        issued = await make_card(owner_scope, initial_balance=1000)
        card_id = issued.card.id

        with pytest.raises(InsufficientBalanceError):
            await ledger.redeem(db, owner_scope, card_id, 1001)
        await db.rollback()

        assert await balance_of(db, card_id) == 1000
        count = await db.scalar(select(func.count()).select_from(Transaction))
        assert count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_entire_balance(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test a card can be spent down to exactly zero."""
        issued = await make_card(owner_scope, initial_balance=1000)

        txn = await ledger.redeem(db, owner_scope, issued.card.id, 1000)
        await db.commit()

        assert txn.balance_after == 0
        assert await balance_of(db, issued.card.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_invalid_method(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test unknown redemption methods are rejected."""
        issued = await make_card(owner_scope, initial_balance=1000)

        with pytest.raises(ValidationError, match="Invalid redemption method"):
            await ledger.redeem(db, owner_scope, issued.card.id, 100, redemption_method="telepathy")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_by_code(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test redemption codes match regardless of case and dashes."""
        issued = await make_card(owner_scope, initial_balance=2000)
        code = issued.redemption_code
        typed = f"{code[:4]}-{code[4:8]}-{code[8:]}".lower()

        txn = await ledger.redeem_by_code(db, owner_scope, typed, 750)
        await db.commit()

        assert txn.card_id == issued.card.id
        assert txn.redemption_method == "code"
        assert await balance_of(db, issued.card.id) == 1250

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_by_unknown_code(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test an unknown code is reported as a missing card."""
        await make_card(owner_scope, initial_balance=2000)

        with pytest.raises(NotFoundError):
            await ledger.redeem_by_code(db, owner_scope, "ZZZZZZZZZZZZZZZZ", 100)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_by_track_data(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test redemption by swiped track data."""
        issued = await make_card(
            owner_scope, initial_balance=2000, type="physical", track_data=";1234567890?"
        )

        txn = await ledger.redeem_by_track_data(db, owner_scope, ";1234567890?", 300)
        await db.commit()

        assert txn.card_id == issued.card.id
        assert txn.redemption_method == "track_data"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_requires_redemption(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test only redeem transactions can be refunded."""
        issued = await make_card(owner_scope)
        load = await ledger.load(db, owner_scope, issued.card.id, 500)
        await db.commit()

        with pytest.raises(ValidationError, match="Only redemption transactions"):
            await ledger.refund(db, owner_scope, load.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_other_merchants_transaction(
        self, db: Any, owner_scope: Any, other_merchant: Any, make_card: Any
    ) -> None:
        """Test a transaction of another merchant cannot be refunded."""
        other_scope = scope_for(other_merchant)
        issued = await make_card(other_scope, initial_balance=1000)
        redeem = await ledger.redeem(db, other_scope, issued.card.id, 400)
        await db.commit()

        with pytest.raises(ForbiddenError):
            await ledger.refund(db, owner_scope, redeem.id)


class TestTransfer:
    """Test suite for card-to-card transfers."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_writes_linked_legs(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test a transfer writes two legs that point at each other."""
        source = await make_card(owner_scope, initial_balance=5000)
        target = await make_card(owner_scope, initial_balance=1000)

        result = await ledger.transfer(db, owner_scope, source.card.id, target.card.id, 2000)
        await db.commit()

        out, into = result.transfer_out, result.transfer_in
        assert out.type == "transfer_out"
        assert into.type == "transfer_in"
        assert out.amount == into.amount == 2000
        assert out.linked_transaction_id == into.id
        assert into.linked_transaction_id == out.id
        assert await balance_of(db, source.card.id) == 3000
        assert await balance_of(db, target.card.id) == 3000

        total_before = 5000 + 1000
        total_after = await balance_of(db, source.card.id) + await balance_of(db, target.card.id)
        assert total_after == total_before
        await assert_history_matches_balance(db, source.card.id)
        await assert_history_matches_balance(db, target.card.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_same_card(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test a card cannot transfer to itself."""
        issued = await make_card(owner_scope, initial_balance=5000)

        with pytest.raises(ValidationError, match="same card"):
            await ledger.transfer(db, owner_scope, issued.card.id, issued.card.id, 100)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_insufficient_balance(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test a failed transfer leaves both cards untouched."""
        source = await make_card(owner_scope, initial_balance=500)
        target = await make_card(owner_scope, initial_balance=0)
        source_id, target_id = source.card.id, target.card.id

        with pytest.raises(InsufficientBalanceError):
            await ledger.transfer(db, owner_scope, source_id, target_id, 600)
        await db.rollback()

        assert await balance_of(db, source_id) == 500
        assert await balance_of(db, target_id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_to_inactive_card(
        self, db: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test both sides of a transfer must be usable."""
        source = await make_card(owner_scope, initial_balance=5000)
        target = await make_card(owner_scope)
        target.card.status = "cancelled"
        await db.commit()

        with pytest.raises(CardInactiveError):
            await ledger.transfer(db, owner_scope, source.card.id, target.card.id, 100)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_across_merchants(
        self, db: Any, owner_scope: Any, other_merchant: Any, make_card: Any
    ) -> None:
        """Test the destination must belong to the same merchant."""
        source = await make_card(owner_scope, initial_balance=5000)
        foreign = await make_card(scope_for(other_merchant))

        with pytest.raises(ForbiddenError, match="Destination card"):
            await ledger.transfer(db, owner_scope, source.card.id, foreign.card.id, 100)


class TestAdjust:
    """Test suite for manual adjustments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_down(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test a negative adjustment stores the absolute amount."""
        issued = await make_card(owner_scope, initial_balance=1000)

        txn = await ledger.adjust(db, owner_scope, issued.card.id, -300, "Till count correction")
        await db.commit()

        assert txn.type == "adjust"
        assert txn.amount == 300
        assert txn.balance_after == 700
        assert txn.description == "Adjustment: Till count correction"
        assert signed_amount(txn) == -300
        await assert_history_matches_balance(db, issued.card.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_requires_elevated_role(
        self, db: Any, staff_scope: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test staff members cannot adjust balances."""
        issued = await make_card(owner_scope, initial_balance=1000)

        with pytest.raises(ForbiddenError, match="owner or admin"):
            await ledger.adjust(db, staff_scope, issued.card.id, 100, "Goodwill")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_zero(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test zero adjustments are rejected."""
        issued = await make_card(owner_scope, initial_balance=1000)

        with pytest.raises(InvalidAmountError, match="cannot be zero"):
            await ledger.adjust(db, owner_scope, issued.card.id, 0, "Nothing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_below_zero(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test an adjustment may not drive the balance negative."""
        issued = await make_card(owner_scope, initial_balance=1000)

        with pytest.raises(InvalidAmountError, match="negative balance"):
            await ledger.adjust(db, owner_scope, issued.card.id, -1001, "Too much")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjust_suspended_card(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test adjustments still apply to suspended cards."""
        issued = await make_card(owner_scope, initial_balance=1000)
        issued.card.status = "suspended"
        await db.commit()

        txn = await ledger.adjust(db, owner_scope, issued.card.id, 250, "Goodwill credit")
        await db.commit()

        assert txn.balance_after == 1250


class TestLedgerEvents:
    """Test suite for events queued by ledger operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_queues_subscribed_events(
        self, db: Any, merchant: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test deliveries are queued in the same transaction as the redemption."""
        issued = await make_card(owner_scope, initial_balance=1000)
        db.add(
            WebhookEndpoint(
                merchant_id=merchant.id,
                url="https://hooks.example/giftledger",
                events=["card.redeemed", "transaction.completed"],
                secret="whsec_test",
            )
        )
        await db.commit()

        await ledger.redeem(db, owner_scope, issued.card.id, 100)
        await db.commit()

        events = (await db.scalars(select(WebhookDelivery.event))).all()
        assert sorted(events) == ["card.redeemed", "transaction.completed"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_operation_queues_nothing(
        self, db: Any, merchant: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test a rejected operation leaves no delivery behind."""
        issued = await make_card(owner_scope, initial_balance=100)
        db.add(
            WebhookEndpoint(
                merchant_id=merchant.id,
                url="https://hooks.example/giftledger",
                events=["card.redeemed"],
                secret="whsec_test",
            )
        )
        await db.commit()

        with pytest.raises(InsufficientBalanceError):
            await ledger.redeem(db, owner_scope, issued.card.id, 500)
        await db.rollback()

        count = await db.scalar(select(func.count()).select_from(WebhookDelivery))
        assert count == 0
