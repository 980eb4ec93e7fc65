"""
Ledger engine: every card balance mutation goes through here.

Each operation runs inside the caller's database transaction:
1. Lock the card row(s) (SELECT ... FOR UPDATE, re-read from the database)
2. Validate card usability, amount bounds and balance limits
3. Compare-and-set the new balance and append the Transaction row(s)
4. Queue the matching webhook events in the same transaction

Nothing is committed here. The unit of work that called the engine commits
on success and rolls back on any raised error, so a failed check never
leaves partial state.
"""
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from giftledger.core.audit import audit
from giftledger.core.cards import card_service, get_merchant, load_card, validate_card_usable
from giftledger.core.constants import REDEMPTION_METHODS, TRANSACTION_TYPES
from giftledger.core.errors import (
    ConcurrentModificationError,
    ForbiddenError,
    GiftLedgerError,
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from giftledger.core.identity import Scope
from giftledger.core.pagination import Page, paginate
from giftledger.core.serializers import TransactionOut
from giftledger.core.webhooks import dispatch_event
from giftledger.database.models import Card, Customer, Transaction, utcnow
from giftledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREDIT_TYPES = frozenset({"load", "transfer_in", "refund"})
DEBIT_TYPES = frozenset({"redeem", "transfer_out"})


def signed_amount(txn: Transaction) -> int:
    """
    Effect of a transaction on its card's balance.

    Amounts are stored positive. Adjustments go either way, so their sign
    comes from the balance snapshots.
    """
    if txn.type in CREDIT_TYPES:
        return txn.amount
    if txn.type in DEBIT_TYPES:
        return -txn.amount
    return txn.amount if txn.balance_after >= txn.balance_before else -txn.amount


def _require_positive_int(amount: Any, message: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Amount must be an integer number of cents")
    if amount <= 0:
        raise InvalidAmountError(message)
    return amount


@dataclass
class TransferResult:
    transfer_out: Transaction
    transfer_in: Transaction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transferOut": TransactionOut.dump(self.transfer_out),
            "transferIn": TransactionOut.dump(self.transfer_in),
        }


class LedgerEngine:
    """
    Balance-affecting operations and transaction queries.

    Operations: load, redeem (by card id, redemption code or track data),
    transfer, adjust, refund.
    """

    @asynccontextmanager
    async def _instrumented(self, operation: str, amount: Optional[int] = None) -> AsyncIterator[None]:
        start = time.perf_counter()
        outcome = "success"
        try:
            yield
        except GiftLedgerError as e:
            outcome = e.code
            logger.info("ledger_operation_rejected", operation=operation, code=e.code, reason=e.message)
            raise
        except Exception:
            outcome = "INTERNAL_ERROR"
            raise
        finally:
            metrics.record_ledger_operation(
                operation, outcome, time.perf_counter() - start, amount
            )

    async def _record(
        self,
        db: AsyncSession,
        scope: Scope,
        card: Card,
        type: str,
        amount: int,
        new_balance: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        redemption_method: Optional[str] = None,
        linked_transaction_id: Optional[uuid.UUID] = None,
    ) -> Transaction:
        """
        Write the card's new balance and append the transaction that explains it.

        The balance write is a compare-and-set on the validated balance. If
        another writer changed the balance first, nothing is written and
        ConcurrentModificationError is raised.
        """
        if new_balance < 0:
            raise InsufficientBalanceError("Insufficient card balance")

        balance_before = card.current_balance
        now = utcnow()
        result = await db.execute(
            update(Card)
            .where(Card.id == card.id, Card.current_balance == balance_before)
            .values(current_balance=new_balance, last_used_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "card_balance_conflict", card_id=str(card.id), expected_balance=balance_before
            )
            raise ConcurrentModificationError(
                "Card balance changed during the operation; retry the request"
            )
        set_committed_value(card, "current_balance", new_balance)
        set_committed_value(card, "last_used_at", now)
        set_committed_value(card, "updated_at", now)

        txn = Transaction(
            card_id=card.id,
            merchant_id=card.merchant_id,
            customer_id=card.customer_id,
            type=type,
            amount=amount,
            balance_before=balance_before,
            balance_after=new_balance,
            currency=card.currency,
            description=description,
            reference=reference,
            redemption_method=redemption_method,
            linked_transaction_id=linked_transaction_id,
            performed_by=scope.actor_id,
            performed_by_type=scope.actor_type,
            created_at=now,
        )
        db.add(txn)
        await db.flush()
        return txn

    async def _emit(
        self, db: AsyncSession, card: Card, event: str, data: Dict[str, Any], *txns: Transaction
    ) -> None:
        await dispatch_event(db, card.merchant_id, event, data)
        for txn in txns:
            await dispatch_event(db, txn.merchant_id, "transaction.completed", TransactionOut.dump(txn))

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(
        self,
        db: AsyncSession,
        scope: Scope,
        card_id: uuid.UUID,
        amount: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        """
        Add funds to a card.

        Args:
            db: Database session
            scope: Merchant scope
            card_id: Card to load
            amount: Amount in cents, within the merchant's load bounds
            description: Optional description
            reference: Optional external reference

        Returns:
            Transaction: The ``load`` transaction

        Raises:
            CardInactiveError, CardExpiredError: Card not usable
            InvalidAmountError: Amount out of bounds or balance cap exceeded
        """
        async with self._instrumented("load", amount):
            merchant = await get_merchant(db, scope.require_merchant())
            card = await load_card(db, scope, card_id, for_update=True)
            validate_card_usable(card)

            _require_positive_int(amount, "Load amount must be greater than zero")
            if amount < merchant.min_load_amount:
                raise InvalidAmountError(
                    f"Load amount must be at least {merchant.min_load_amount} cents"
                )
            if amount > merchant.max_load_amount:
                raise InvalidAmountError(
                    f"Load amount must not exceed {merchant.max_load_amount} cents"
                )
            new_balance = card.current_balance + amount
            if new_balance > merchant.max_card_balance:
                raise InvalidAmountError(
                    f"New balance would exceed maximum allowed ({merchant.max_card_balance} cents)"
                )

            txn = await self._record(
                db,
                scope,
                card,
                "load",
                amount,
                new_balance,
                description=description or "Funds loaded",
                reference=reference,
            )
            await self._emit(db, card, "card.loaded", TransactionOut.dump(txn), txn)

            logger.info(
                "card_loaded",
                card_id=str(card.id),
                transaction_id=str(txn.id),
                amount=amount,
                balance_after=new_balance,
            )
            return txn

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------

    async def _redeem_card(
        self,
        db: AsyncSession,
        scope: Scope,
        card: Card,
        amount: int,
        redemption_method: str,
        description: Optional[str],
        reference: Optional[str],
    ) -> Transaction:
        validate_card_usable(card)
        _require_positive_int(amount, "Redeem amount must be greater than zero")
        if amount > card.current_balance:
            raise InsufficientBalanceError("Insufficient card balance")

        new_balance = card.current_balance - amount
        txn = await self._record(
            db,
            scope,
            card,
            "redeem",
            amount,
            new_balance,
            description=description or "Funds redeemed",
            reference=reference,
            redemption_method=redemption_method,
        )
        await self._emit(db, card, "card.redeemed", TransactionOut.dump(txn), txn)

        logger.info(
            "card_redeemed",
            card_id=str(card.id),
            transaction_id=str(txn.id),
            amount=amount,
            redemption_method=redemption_method,
            balance_after=new_balance,
        )
        return txn

    async def redeem(
        self,
        db: AsyncSession,
        scope: Scope,
        card_id: uuid.UUID,
        amount: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        redemption_method: str = "manual",
    ) -> Transaction:
        """
        Spend funds from a card identified by id.

        Raises:
            CardInactiveError, CardExpiredError: Card not usable
            InvalidAmountError: Amount not positive
            InsufficientBalanceError: Amount exceeds the current balance
        """
        if redemption_method not in REDEMPTION_METHODS:
            raise ValidationError(f"Invalid redemption method: {redemption_method}")
        async with self._instrumented("redeem", amount):
            card = await load_card(db, scope, card_id, for_update=True)
            return await self._redeem_card(
                db, scope, card, amount, redemption_method, description, reference
            )

    async def redeem_by_code(
        self,
        db: AsyncSession,
        scope: Scope,
        code: str,
        amount: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        """Redeem against the card whose redemption code hash matches."""
        async with self._instrumented("redeem", amount):
            found = await card_service.find_by_code(db, scope, code)
            card = await load_card(db, scope, found.id, for_update=True)
            return await self._redeem_card(
                db, scope, card, amount, "code", description or "Funds redeemed by code", reference
            )

    async def redeem_by_track_data(
        self,
        db: AsyncSession,
        scope: Scope,
        track_data: str,
        amount: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        """Redeem against the card whose track data hash matches."""
        async with self._instrumented("redeem", amount):
            found = await card_service.find_by_track_data(db, scope, track_data)
            card = await load_card(db, scope, found.id, for_update=True)
            return await self._redeem_card(
                db,
                scope,
                card,
                amount,
                "track_data",
                description or "Funds redeemed by track data",
                reference,
            )

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    async def transfer(
        self,
        db: AsyncSession,
        scope: Scope,
        from_card_id: uuid.UUID,
        to_card_id: uuid.UUID,
        amount: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> TransferResult:
        """
        Move value between two distinct cards of the same merchant.

        Both cards are locked in id order. The debit leg is written first,
        then the credit leg pointing back at it, then the debit leg is
        patched to point at the credit leg; all inside one transaction, so
        a single leg is never visible on its own.

        Raises:
            ValidationError: Same card on both sides
            ForbiddenError: Either card belongs to another merchant
            InsufficientBalanceError: Source balance too low
            InvalidAmountError: Amount not positive or destination cap exceeded
        """
        async with self._instrumented("transfer", amount):
            if from_card_id == to_card_id:
                raise ValidationError("Cannot transfer to the same card")

            merchant = await get_merchant(db, scope.require_merchant())

            locked: Dict[uuid.UUID, Card] = {}
            for card_id in sorted((from_card_id, to_card_id), key=str):
                try:
                    locked[card_id] = await load_card(db, scope, card_id, for_update=True)
                except NotFoundError:
                    label = "Source" if card_id == from_card_id else "Destination"
                    raise NotFoundError(f"{label} card not found")
                except ForbiddenError:
                    label = "Source" if card_id == from_card_id else "Destination"
                    raise ForbiddenError(f"{label} card does not belong to this merchant")
            from_card, to_card = locked[from_card_id], locked[to_card_id]

            validate_card_usable(from_card)
            validate_card_usable(to_card)

            _require_positive_int(amount, "Transfer amount must be greater than zero")
            if amount > from_card.current_balance:
                raise InsufficientBalanceError("Insufficient card balance")
            to_new_balance = to_card.current_balance + amount
            if to_new_balance > merchant.max_card_balance:
                raise InvalidAmountError(
                    "Transfer would cause destination card to exceed maximum balance "
                    f"({merchant.max_card_balance} cents)"
                )

            desc = description or "Balance transfer"
            transfer_out = await self._record(
                db,
                scope,
                from_card,
                "transfer_out",
                amount,
                from_card.current_balance - amount,
                description=desc,
                reference=reference,
            )
            transfer_in = await self._record(
                db,
                scope,
                to_card,
                "transfer_in",
                amount,
                to_new_balance,
                description=desc,
                reference=reference,
                linked_transaction_id=transfer_out.id,
            )
            transfer_out.linked_transaction_id = transfer_in.id
            await db.flush()

            result = TransferResult(transfer_out=transfer_out, transfer_in=transfer_in)
            await self._emit(db, from_card, "card.transferred", result.to_dict(), transfer_out, transfer_in)

            logger.info(
                "card_transferred",
                from_card_id=str(from_card.id),
                to_card_id=str(to_card.id),
                amount=amount,
                transfer_out_id=str(transfer_out.id),
                transfer_in_id=str(transfer_in.id),
            )
            return result

    # ------------------------------------------------------------------
    # Adjust
    # ------------------------------------------------------------------

    async def adjust(
        self,
        db: AsyncSession,
        scope: Scope,
        card_id: uuid.UUID,
        amount: int,
        reason: str,
        reference: Optional[str] = None,
    ) -> Transaction:
        """
        Apply a signed manual correction.

        Only owners and admins may adjust. The stored amount is the absolute
        value; direction is visible from the balance snapshots.

        Raises:
            ForbiddenError: Caller role is not owner or admin
            InvalidAmountError: Zero amount, negative result or cap exceeded
        """
        async with self._instrumented("adjust", amount if isinstance(amount, int) else None):
            if not scope.is_elevated:
                raise ForbiddenError("Only merchant owner or admin can perform balance adjustments")
            if not reason or not reason.strip():
                raise ValidationError("An adjustment reason is required")

            merchant = await get_merchant(db, scope.require_merchant())
            card = await load_card(db, scope, card_id, for_update=True)

            if isinstance(amount, bool) or not isinstance(amount, int):
                raise InvalidAmountError("Amount must be an integer number of cents")
            if amount == 0:
                raise InvalidAmountError("Adjustment amount cannot be zero")
            new_balance = card.current_balance + amount
            if new_balance < 0:
                raise InvalidAmountError("Adjustment would result in a negative balance")
            if new_balance > merchant.max_card_balance:
                raise InvalidAmountError(
                    f"Adjustment would exceed maximum balance ({merchant.max_card_balance} cents)"
                )

            txn = await self._record(
                db,
                scope,
                card,
                "adjust",
                abs(amount),
                new_balance,
                description=f"Adjustment: {reason}",
                reference=reference,
            )
            await self._emit(db, card, "card.adjusted", TransactionOut.dump(txn), txn)
            audit.log(
                db, scope, "card.adjusted", "card", card.id, {"amount": amount, "reason": reason}
            )

            logger.info(
                "card_adjusted",
                card_id=str(card.id),
                transaction_id=str(txn.id),
                amount=amount,
                balance_after=new_balance,
            )
            return txn

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(
        self,
        db: AsyncSession,
        scope: Scope,
        transaction_id: uuid.UUID,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        """
        Refund a redemption in full.

        The card is locked before looking for an existing refund, so two
        concurrent refunds of one redemption serialize and the second sees
        the first.

        Raises:
            NotFoundError: No such transaction
            ForbiddenError: Transaction belongs to another merchant
            ValidationError: Not a redemption, or already refunded
            InvalidAmountError: Refund would exceed the balance cap
        """
        async with self._instrumented("refund"):
            merchant = await get_merchant(db, scope.require_merchant())

            original = await db.get(Transaction, transaction_id)
            if original is None:
                raise NotFoundError("Transaction not found")
            if original.merchant_id != merchant.id:
                raise ForbiddenError("Transaction does not belong to this merchant")
            if original.type != "redeem":
                raise ValidationError("Only redemption transactions can be refunded")

            card = await load_card(db, scope, original.card_id, for_update=True)

            existing = await db.scalar(
                select(Transaction.id).where(
                    Transaction.card_id == card.id,
                    Transaction.type == "refund",
                    Transaction.linked_transaction_id == original.id,
                )
            )
            if existing is not None:
                raise ValidationError("This transaction has already been refunded")

            validate_card_usable(card)

            new_balance = card.current_balance + original.amount
            if new_balance > merchant.max_card_balance:
                raise InvalidAmountError(
                    f"Refund would exceed maximum card balance ({merchant.max_card_balance} cents)"
                )

            txn = await self._record(
                db,
                scope,
                card,
                "refund",
                original.amount,
                new_balance,
                description=description or f"Refund for transaction {original.id}",
                reference=reference,
                linked_transaction_id=original.id,
            )
            await self._emit(db, card, "card.refunded", TransactionOut.dump(txn), txn)
            audit.log(
                db,
                scope,
                "transaction.refunded",
                "transaction",
                original.id,
                {"refundTransactionId": str(txn.id), "amount": original.amount},
            )

            logger.info(
                "transaction_refunded",
                card_id=str(card.id),
                original_transaction_id=str(original.id),
                refund_transaction_id=str(txn.id),
                amount=original.amount,
            )
            return txn

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_transaction(
        self, db: AsyncSession, scope: Scope, transaction_id: uuid.UUID
    ) -> Transaction:
        txn = await db.get(Transaction, transaction_id)
        if txn is None or txn.merchant_id != scope.require_merchant():
            raise NotFoundError("Transaction not found")
        return txn

    async def list_for_merchant(
        self,
        db: AsyncSession,
        scope: Scope,
        type: Optional[str] = None,
        card_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        stmt = select(Transaction).where(Transaction.merchant_id == scope.require_merchant())
        if type:
            if type not in TRANSACTION_TYPES:
                raise ValidationError(f"Invalid transaction type: {type}")
            stmt = stmt.where(Transaction.type == type)
        if card_id is not None:
            stmt = stmt.where(Transaction.card_id == card_id)
        return await paginate(db, stmt, Transaction, limit, cursor)

    async def list_for_card(
        self,
        db: AsyncSession,
        scope: Scope,
        card_id: uuid.UUID,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        card = await load_card(db, scope, card_id)
        stmt = select(Transaction).where(Transaction.card_id == card.id)
        return await paginate(db, stmt, Transaction, limit, cursor)

    async def list_for_customer(
        self,
        db: AsyncSession,
        scope: Scope,
        customer_id: uuid.UUID,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        customer = await db.get(Customer, customer_id)
        if customer is None or customer.merchant_id != scope.require_merchant():
            raise NotFoundError("Customer not found")
        stmt = select(Transaction).where(Transaction.customer_id == customer.id)
        return await paginate(db, stmt, Transaction, limit, cursor)

    async def card_history(self, db: AsyncSession, card_id: uuid.UUID) -> List[Transaction]:
        """All transactions of a card in write order."""
        result = await db.execute(
            select(Transaction)
            .where(Transaction.card_id == card_id)
            .order_by(Transaction.created_at, Transaction.id)
        )
        return list(result.scalars().all())


ledger = LedgerEngine()
