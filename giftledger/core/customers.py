"""Customer records, unique by email within a merchant."""
import uuid
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.core.errors import ConflictError, NotFoundError, ValidationError
from giftledger.core.identity import Scope
from giftledger.core.pagination import Page, paginate
from giftledger.core.serializers import CustomerOut
from giftledger.core.webhooks import dispatch_event
from giftledger.database.models import Customer

logger = structlog.get_logger(__name__)


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("A valid email address is required")
    return email


class CustomerService:
    """Create, read and update customers of a merchant."""

    async def _email_taken(
        self,
        db: AsyncSession,
        merchant_id: uuid.UUID,
        email: str,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        stmt = select(func.count()).select_from(Customer).where(
            Customer.merchant_id == merchant_id, Customer.email == email
        )
        if exclude_id is not None:
            stmt = stmt.where(Customer.id != exclude_id)
        return bool(await db.scalar(stmt))

    async def create_customer(
        self,
        db: AsyncSession,
        scope: Scope,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Customer:
        """
        Create a customer.

        Raises:
            ConflictError: Email already used by a customer of this merchant
        """
        merchant_id = scope.require_merchant()
        email = _normalize_email(email)
        if await self._email_taken(db, merchant_id, email):
            raise ConflictError("A customer with this email already exists for this merchant")

        customer = Customer(merchant_id=merchant_id, email=email, name=name, phone=phone)
        db.add(customer)
        await db.flush()

        await dispatch_event(db, merchant_id, "customer.created", CustomerOut.dump(customer))
        logger.info("customer_created", customer_id=str(customer.id), merchant_id=str(merchant_id))
        return customer

    async def get_customer(
        self, db: AsyncSession, scope: Scope, customer_id: uuid.UUID
    ) -> Customer:
        customer = await db.get(Customer, customer_id)
        # Another merchant's customer is reported as missing
        if customer is None or customer.merchant_id != scope.require_merchant():
            raise NotFoundError("Customer not found")
        return customer

    async def list_customers(
        self,
        db: AsyncSession,
        scope: Scope,
        email: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        stmt = select(Customer).where(Customer.merchant_id == scope.require_merchant())
        if email:
            stmt = stmt.where(Customer.email == email.strip().lower())
        return await paginate(db, stmt, Customer, limit, cursor)

    async def update_customer(
        self,
        db: AsyncSession,
        scope: Scope,
        customer_id: uuid.UUID,
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Customer:
        """
        Update a customer's name, phone or email.

        Raises:
            NotFoundError: No such customer for this merchant
            ConflictError: New email already used by another customer
        """
        customer = await self.get_customer(db, scope, customer_id)

        if email is not None:
            email = _normalize_email(email)
            if email != customer.email and await self._email_taken(
                db, customer.merchant_id, email, exclude_id=customer.id
            ):
                raise ConflictError("A customer with this email already exists for this merchant")
            customer.email = email
        if name is not None:
            customer.name = name
        if phone is not None:
            customer.phone = phone
        await db.flush()

        await dispatch_event(
            db, customer.merchant_id, "customer.updated", CustomerOut.dump(customer)
        )
        logger.info("customer_updated", customer_id=str(customer.id))
        return customer


customer_service = CustomerService()
