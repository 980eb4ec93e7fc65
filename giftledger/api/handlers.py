"""
Route table for the ``/api/v1`` API key surface.

Handlers receive the session of the gateway's unit of work and the
resolved merchant scope; they never commit.
"""
import uuid
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.core.cards import card_service, get_merchant
from giftledger.core.customers import customer_service
from giftledger.core.email import send_gift_card
from giftledger.core.errors import NotFoundError, ValidationError
from giftledger.core.identity import Scope
from giftledger.core.ledger import ledger
from giftledger.core.pagination import Page
from giftledger.core.serializers import CardOut, CustomerOut, TransactionOut, WebhookEndpointOut
from giftledger.core.webhooks import create_endpoint, delete_endpoint, list_endpoints

from .gateway import GatewayRequest, HandlerResult, Router
from .schemas import (
    CheckBalanceRequest,
    CreateCardRequest,
    CreateCustomerRequest,
    CreateWebhookEndpointRequest,
    LoadRequest,
    RedeemByCodeRequest,
    RedeemByTrackRequest,
    RedeemRequest,
    TransferRequest,
    UpdateCardStatusRequest,
    UpdateCustomerRequest,
)

router = Router()

M = TypeVar("M", bound=BaseModel)


def parse_body(schema: Type[M], body: Dict[str, Any]) -> M:
    """Validate a JSON body, reporting the first problem as a ValidationError."""
    try:
        return schema.model_validate(body)
    except PydanticValidationError as e:
        error = e.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        raise ValidationError(f"{location}: {error['msg']}" if location else error["msg"])


def parse_id(value: Optional[str], label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {label} id")


def parse_limit(query: Dict[str, str]) -> Optional[int]:
    value = query.get("limit")
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError("limit must be an integer")


def page_result(page: Page, out: Type[Any]) -> HandlerResult:
    return HandlerResult([out.dump(item) for item in page.items], meta=page.meta())


# ============================================================================
# CARDS
# ============================================================================

@router.route("POST", "/cards/check-balance")
async def check_balance(db: AsyncSession, scope: Optional[Scope], request: GatewayRequest) -> HandlerResult:
    payload = parse_body(CheckBalanceRequest, request.body)
    result = await card_service.check_balance(db, payload.card_number)
    if result is None:
        raise NotFoundError("Card not found")
    return HandlerResult(result)


@router.route("POST", "/cards", permission="cards:create")
async def create_card(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(CreateCardRequest, request.body)
    issued = await card_service.create_card(
        db,
        scope,
        type=payload.type,
        initial_balance=payload.initial_balance,
        currency=payload.currency,
        customer_id=payload.customer_id,
        expires_at=payload.expires_at,
        pin=payload.pin,
        track_data=payload.track_data,
        recipient_name=payload.recipient_name,
        recipient_email=payload.recipient_email,
        sender_name=payload.sender_name,
        message=payload.message,
    )
    if payload.send_email and issued.card.recipient_email:
        merchant = await get_merchant(db, issued.card.merchant_id)
        await send_gift_card(db, issued.card, issued.redemption_code, merchant)
    return HandlerResult(issued.to_dict(), status_code=201)


@router.route("GET", "/cards", permission="cards:read")
async def list_cards(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    customer_id = request.query.get("customerId")
    page = await card_service.list_cards(
        db,
        scope,
        status=request.query.get("status") or None,
        customer_id=parse_id(customer_id, "customer") if customer_id else None,
        limit=parse_limit(request.query),
        cursor=request.query.get("cursor") or None,
    )
    return page_result(page, CardOut)


@router.route("GET", "/cards/:cardId", permission="cards:read")
async def get_card(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    card = await card_service.get_card(db, scope, parse_id(request.params["cardId"], "card"))
    return HandlerResult(CardOut.dump(card))


@router.route("PATCH", "/cards/:cardId", permission="cards:update")
async def update_card_status(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(UpdateCardStatusRequest, request.body)
    card = await card_service.update_status(
        db, scope, parse_id(request.params["cardId"], "card"), payload.status
    )
    return HandlerResult(CardOut.dump(card))


@router.route("POST", "/cards/:cardId/load", permission="cards:load")
async def load_card(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(LoadRequest, request.body)
    txn = await ledger.load(
        db,
        scope,
        parse_id(request.params["cardId"], "card"),
        payload.amount,
        description=payload.description,
        reference=payload.reference,
    )
    return HandlerResult(TransactionOut.dump(txn))


@router.route("POST", "/cards/:cardId/redeem", permission="cards:redeem")
async def redeem_card(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(RedeemRequest, request.body)
    txn = await ledger.redeem(
        db,
        scope,
        parse_id(request.params["cardId"], "card"),
        payload.amount,
        description=payload.description,
        reference=payload.reference,
        redemption_method=payload.redemption_method,
    )
    return HandlerResult(TransactionOut.dump(txn))


@router.route("POST", "/cards/:cardId/transfer", permission="cards:transfer")
async def transfer(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(TransferRequest, request.body)
    result = await ledger.transfer(
        db,
        scope,
        parse_id(request.params["cardId"], "card"),
        payload.to_card_id,
        payload.amount,
        description=payload.description,
        reference=payload.reference,
    )
    return HandlerResult(result.to_dict())


@router.route("GET", "/cards/:cardId/transactions", permission="transactions:read")
async def list_card_transactions(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    page = await ledger.list_for_card(
        db,
        scope,
        parse_id(request.params["cardId"], "card"),
        limit=parse_limit(request.query),
        cursor=request.query.get("cursor") or None,
    )
    return page_result(page, TransactionOut)


@router.route("POST", "/cards/redeem-by-code", permission="cards:redeem")
async def redeem_by_code(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(RedeemByCodeRequest, request.body)
    txn = await ledger.redeem_by_code(
        db,
        scope,
        payload.code,
        payload.amount,
        description=payload.description,
        reference=payload.reference,
    )
    return HandlerResult(TransactionOut.dump(txn))


@router.route("POST", "/cards/redeem-by-track", permission="cards:redeem")
async def redeem_by_track(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(RedeemByTrackRequest, request.body)
    txn = await ledger.redeem_by_track_data(
        db,
        scope,
        payload.track_data,
        payload.amount,
        description=payload.description,
        reference=payload.reference,
    )
    return HandlerResult(TransactionOut.dump(txn))


# ============================================================================
# TRANSACTIONS
# ============================================================================

@router.route("GET", "/transactions", permission="transactions:read")
async def list_transactions(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    card_id = request.query.get("cardId")
    page = await ledger.list_for_merchant(
        db,
        scope,
        type=request.query.get("type") or None,
        card_id=parse_id(card_id, "card") if card_id else None,
        limit=parse_limit(request.query),
        cursor=request.query.get("cursor") or None,
    )
    return page_result(page, TransactionOut)


@router.route("GET", "/transactions/:transactionId", permission="transactions:read")
async def get_transaction(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    txn = await ledger.get_transaction(
        db, scope, parse_id(request.params["transactionId"], "transaction")
    )
    return HandlerResult(TransactionOut.dump(txn))


# ============================================================================
# CUSTOMERS
# ============================================================================

@router.route("POST", "/customers", permission="customers:create")
async def create_customer(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(CreateCustomerRequest, request.body)
    customer = await customer_service.create_customer(
        db, scope, payload.email, name=payload.name, phone=payload.phone
    )
    return HandlerResult(CustomerOut.dump(customer), status_code=201)


@router.route("GET", "/customers", permission="customers:read")
async def list_customers(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    page = await customer_service.list_customers(
        db,
        scope,
        email=request.query.get("email") or None,
        limit=parse_limit(request.query),
        cursor=request.query.get("cursor") or None,
    )
    return page_result(page, CustomerOut)


@router.route("GET", "/customers/:customerId", permission="customers:read")
async def get_customer(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    customer = await customer_service.get_customer(
        db, scope, parse_id(request.params["customerId"], "customer")
    )
    return HandlerResult(CustomerOut.dump(customer))


@router.route("PATCH", "/customers/:customerId", permission="customers:update")
async def update_customer(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(UpdateCustomerRequest, request.body)
    customer = await customer_service.update_customer(
        db,
        scope,
        parse_id(request.params["customerId"], "customer"),
        email=payload.email,
        name=payload.name,
        phone=payload.phone,
    )
    return HandlerResult(CustomerOut.dump(customer))


@router.route("GET", "/customers/:customerId/transactions", permission="transactions:read")
async def list_customer_transactions(
    db: AsyncSession, scope: Scope, request: GatewayRequest
) -> HandlerResult:
    page = await ledger.list_for_customer(
        db,
        scope,
        parse_id(request.params["customerId"], "customer"),
        limit=parse_limit(request.query),
        cursor=request.query.get("cursor") or None,
    )
    return page_result(page, TransactionOut)


# ============================================================================
# WEBHOOKS
# ============================================================================

@router.route("GET", "/webhooks", permission="webhooks:manage")
async def list_webhooks(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    endpoints = await list_endpoints(db, scope)
    return HandlerResult([WebhookEndpointOut.dump(e) for e in endpoints])


@router.route("POST", "/webhooks", permission="webhooks:manage")
async def create_webhook(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    payload = parse_body(CreateWebhookEndpointRequest, request.body)
    endpoint = await create_endpoint(
        db, scope, payload.url, payload.events, description=payload.description
    )
    data = WebhookEndpointOut.dump(endpoint)
    data["secret"] = endpoint.secret
    return HandlerResult(data, status_code=201)


@router.route("DELETE", "/webhooks/:webhookId", permission="webhooks:manage")
async def delete_webhook(db: AsyncSession, scope: Scope, request: GatewayRequest) -> HandlerResult:
    webhook_id = parse_id(request.params["webhookId"], "webhook")
    await delete_endpoint(db, scope, webhook_id)
    return HandlerResult({"id": str(webhook_id), "deleted": True})
