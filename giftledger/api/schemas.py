"""
Pydantic schemas for API request bodies.

Bodies are accepted in camelCase (``initialBalance``) or snake_case
(``initial_balance``). Amounts are strict integers in cents; their sign and
bounds are checked by the ledger so the caller gets INVALID_AMOUNT rather
than a generic validation error.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============================================================================
# CARDS
# ============================================================================

class CreateCardRequest(_Request):
    """Request schema for issuing a card."""

    type: str = Field(default="digital", description="Card type (physical, digital)")
    initial_balance: StrictInt = Field(default=0, description="Starting balance in cents")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (defaults to merchant)"
    )
    customer_id: Optional[UUID] = Field(default=None, description="Owning customer")
    expires_at: Optional[datetime] = Field(default=None, description="Expiry (ISO 8601)")
    pin: Optional[str] = Field(default=None, description="Optional 4-digit PIN")
    track_data: Optional[str] = Field(default=None, description="Magstripe track data")
    recipient_name: Optional[str] = Field(default=None, max_length=200)
    recipient_email: Optional[str] = Field(default=None, max_length=320)
    sender_name: Optional[str] = Field(default=None, max_length=200)
    message: Optional[str] = Field(default=None, max_length=1000)
    send_email: bool = Field(
        default=False, description="Queue the gift card email to recipientEmail"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "type": "digital",
                    "initialBalance": 2500,
                    "recipientEmail": "friend@example.com",
                    "sendEmail": True,
                }
            ]
        },
    )


class UpdateCardStatusRequest(_Request):
    status: str = Field(..., description="Target status (active, suspended, cancelled)")


class LoadRequest(_Request):
    """Request schema for loading funds onto a card."""

    amount: StrictInt = Field(..., description="Amount in cents")
    description: Optional[str] = Field(default=None, max_length=500)
    reference: Optional[str] = Field(default=None, max_length=200)


class RedeemRequest(LoadRequest):
    """Request schema for redeeming funds from a card."""

    redemption_method: str = Field(
        default="manual", description="code, card_number, track_data, qr or manual"
    )


class RedeemByCodeRequest(LoadRequest):
    code: str = Field(..., min_length=1, description="Redemption code")


class RedeemByTrackRequest(LoadRequest):
    track_data: str = Field(..., min_length=1, description="Magstripe track data")


class TransferRequest(LoadRequest):
    """Request schema for moving value between two cards."""

    to_card_id: UUID = Field(..., description="Destination card")


class CheckBalanceRequest(_Request):
    card_number: str = Field(..., min_length=1, description="Public card number")


class AdjustRequest(_Request):
    """Request schema for a signed manual balance correction."""

    amount: StrictInt = Field(..., description="Signed amount in cents (non-zero)")
    reason: str = Field(..., min_length=1, max_length=500, description="Why the balance changes")
    reference: Optional[str] = Field(default=None, max_length=200)


class RefundRequest(_Request):
    """Request schema for refunding a redemption in full."""

    description: Optional[str] = Field(default=None, max_length=500)
    reference: Optional[str] = Field(default=None, max_length=200)


# ============================================================================
# CUSTOMERS
# ============================================================================

class CreateCustomerRequest(_Request):
    email: str = Field(..., description="Unique per merchant")
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)


class UpdateCustomerRequest(_Request):
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)


# ============================================================================
# MERCHANTS AND PARTNERS
# ============================================================================

class CreateMerchantRequest(_Request):
    """Request schema for creating a merchant; the caller becomes its owner."""

    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100, description="Lowercase letters, digits, hyphens")
    email: Optional[str] = Field(default=None, max_length=255)
    partner_id: Optional[UUID] = Field(default=None, description="Partner the merchant belongs to")


class UpdateMerchantRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


class UpdateMerchantSettingsRequest(_Request):
    """Partial update of the card program settings; omitted fields are kept."""

    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    max_card_balance: Optional[StrictInt] = Field(default=None, description="Cents")
    min_load_amount: Optional[StrictInt] = Field(default=None, description="Cents")
    max_load_amount: Optional[StrictInt] = Field(default=None, description="Cents")
    card_expiration_days: Optional[StrictInt] = Field(default=None, description="Days until expiry")


class CreatePartnerRequest(_Request):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)


class UpdatePartnerRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


# ============================================================================
# API KEYS AND WEBHOOKS
# ============================================================================

class CreateApiKeyRequest(_Request):
    """Request schema for creating an API key."""

    name: str = Field(..., min_length=1, max_length=200, description="Display name")
    permissions: List[str] = Field(..., description="Capability strings")
    environment: str = Field(default="live", description="live or test")
    rate_limit_per_minute: Optional[StrictInt] = Field(default=None, gt=0)
    rate_limit_per_day: Optional[StrictInt] = Field(default=None, gt=0)
    allowed_merchant_ids: Optional[List[UUID]] = Field(
        default=None, description="Partner keys only"
    )
    expires_at: Optional[datetime] = None


class CreateWebhookEndpointRequest(_Request):
    url: str = Field(..., description="Absolute http(s) URL")
    events: List[str] = Field(..., description="Subscribed events")
    description: Optional[str] = Field(default=None, max_length=500)


# ============================================================================
# MONITORING
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
