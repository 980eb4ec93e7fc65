"""
Outbound representations of ledger entities.

Used for API responses and webhook payloads alike, so both surfaces carry
the same camelCase field names. Secrets (code, PIN and track hashes, API
key hashes) are never part of these models.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Out(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    @classmethod
    def dump(cls, obj: Any) -> Dict[str, Any]:
        """Validate an ORM object and render it as JSON-safe camelCase dict."""
        return cls.model_validate(obj).model_dump(mode="json", by_alias=True)


class CardOut(_Out):
    id: uuid.UUID
    merchant_id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    card_number: str
    type: str
    status: str
    initial_balance: int
    current_balance: int
    currency: str
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None
    expires_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime


class TransactionOut(_Out):
    id: uuid.UUID
    card_id: uuid.UUID
    merchant_id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    type: str
    amount: int
    balance_before: int
    balance_after: int
    currency: str
    description: Optional[str] = None
    reference: Optional[str] = None
    redemption_method: Optional[str] = None
    linked_transaction_id: Optional[uuid.UUID] = None
    performed_by: Optional[str] = None
    performed_by_type: str
    created_at: datetime


class CustomerOut(_Out):
    id: uuid.UUID
    merchant_id: uuid.UUID
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PartnerOut(_Out):
    id: uuid.UUID
    name: str
    slug: Optional[str] = None
    email: Optional[str] = None
    status: str
    created_at: datetime


class MerchantOut(_Out):
    id: uuid.UUID
    partner_id: Optional[uuid.UUID] = None
    name: str
    slug: Optional[str] = None
    email: Optional[str] = None
    status: str
    currency: str
    max_card_balance: int
    min_load_amount: int
    max_load_amount: int
    card_expiration_days: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class ApiKeyOut(_Out):
    id: uuid.UUID
    merchant_id: Optional[uuid.UUID] = None
    partner_id: Optional[uuid.UUID] = None
    name: str
    key_prefix: str
    environment: str
    permissions: List[str]
    allowed_merchant_ids: Optional[List[str]] = None
    rate_limit_per_minute: int
    rate_limit_per_day: int
    status: str
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime
    revoked_at: Optional[datetime] = None


class WebhookEndpointOut(_Out):
    id: uuid.UUID
    merchant_id: Optional[uuid.UUID] = None
    partner_id: Optional[uuid.UUID] = None
    url: str
    description: Optional[str] = None
    events: List[str]
    status: str
    failure_count: int
    last_delivered_at: Optional[datetime] = None
    created_at: datetime


class WebhookDeliveryOut(_Out):
    id: uuid.UUID
    endpoint_id: uuid.UUID
    event: str
    status: str
    attempts: int
    next_retry_at: Optional[datetime] = None
    response_status: Optional[int] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
