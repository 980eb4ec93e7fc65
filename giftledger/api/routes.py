"""
API routes.

- ``/api/v1/*``: API key surface, dispatched by the gateway
- ``/portal/*``: signed-in portal users; the identity provider in front of
  the service supplies ``X-User-Id`` and ``X-User-Role``
- ``/health*``, ``/metrics``: monitoring
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.core.api_keys import api_key_service
from giftledger.core.audit import audit
from giftledger.core.cards import card_service, get_merchant
from giftledger.core.email import send_gift_card
from giftledger.core.errors import UnauthorizedError
from giftledger.core.identity import (
    CallerIdentity,
    Scope,
    resolve_merchant_scope,
    resolve_partner_scope,
)
from giftledger.core.ledger import ledger
from giftledger.core.merchants import merchant_service, partner_service
from giftledger.core.serializers import (
    ApiKeyOut,
    CardOut,
    MerchantOut,
    PartnerOut,
    TransactionOut,
    WebhookDeliveryOut,
    WebhookEndpointOut,
)
from giftledger.core.webhooks import (
    create_endpoint,
    delete_endpoint,
    list_deliveries,
    list_endpoints,
    reactivate_endpoint,
)
from giftledger.database.connection import get_db
from giftledger.monitoring.health import HealthCheck

from .gateway import Gateway
from .handlers import router as gateway_routes
from .schemas import (
    AdjustRequest,
    CreateApiKeyRequest,
    CreateCardRequest,
    CreateMerchantRequest,
    CreatePartnerRequest,
    CreateWebhookEndpointRequest,
    HealthCheckResponse,
    LoadRequest,
    RedeemRequest,
    RefundRequest,
    TransferRequest,
    UpdateCardStatusRequest,
    UpdateMerchantRequest,
    UpdateMerchantSettingsRequest,
    UpdatePartnerRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
api_router = APIRouter(prefix="/api/v1", tags=["api"])
portal_router = APIRouter(prefix="/portal", tags=["portal"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
gateway = Gateway(router=gateway_routes)
health_check = HealthCheck()


def ok(data: Any, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if meta is not None:
        body["meta"] = meta
    return body


# ============================================================================
# API KEY SURFACE
# ============================================================================

@api_router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
    include_in_schema=False,
)
async def api_gateway(path: str, request: Request) -> Response:
    """Hand every /api/v1 request to the gateway pipeline."""
    result = await gateway.handle(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        headers=request.headers,
        raw_body=await request.body(),
        client_host=request.client.host if request.client else None,
    )
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(content=result.body, status_code=result.status_code, headers=result.headers)


# ============================================================================
# PORTAL
# ============================================================================

async def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: str = Header(default="user"),
) -> CallerIdentity:
    """Caller identity forwarded by the identity provider."""
    if not x_user_id:
        raise UnauthorizedError("Authentication required")
    return CallerIdentity(user_id=x_user_id, role=x_user_role)


async def merchant_scope(
    merchant_id: uuid.UUID,
    identity: CallerIdentity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> Scope:
    return await resolve_merchant_scope(db, identity, merchant_id)


async def partner_scope(
    partner_id: uuid.UUID,
    identity: CallerIdentity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> Scope:
    return await resolve_partner_scope(db, identity, partner_id)


@portal_router.post(
    "/merchants",
    status_code=status.HTTP_201_CREATED,
    summary="Create a merchant",
    description="The caller becomes the merchant's owner",
)
async def portal_create_merchant(
    request: CreateMerchantRequest,
    identity: CallerIdentity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    merchant = await merchant_service.create_merchant(
        db,
        identity,
        name=request.name,
        slug=request.slug,
        email=request.email,
        partner_id=request.partner_id,
    )
    return ok(MerchantOut.dump(merchant))


@portal_router.get("/merchants", summary="List accessible merchants")
async def portal_list_merchants(
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    identity: CallerIdentity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    page = await merchant_service.list_merchants(db, identity, limit=limit, cursor=cursor)
    return ok([MerchantOut.dump(m) for m in page.items], page.meta())


@portal_router.get("/merchants/{merchant_id}", summary="Get a merchant")
async def portal_get_merchant(
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return ok(MerchantOut.dump(await merchant_service.get_merchant(db, scope)))


@portal_router.patch("/merchants/{merchant_id}", summary="Update merchant details")
async def portal_update_merchant(
    request: UpdateMerchantRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    merchant = await merchant_service.update_merchant(
        db, scope, name=request.name, email=request.email
    )
    return ok(MerchantOut.dump(merchant))


@portal_router.patch(
    "/merchants/{merchant_id}/settings",
    summary="Update card program settings",
    description="Partial update; owner or admin only",
)
async def portal_update_merchant_settings(
    request: UpdateMerchantSettingsRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    merchant = await merchant_service.update_settings(db, scope, **request.model_dump())
    return ok(MerchantOut.dump(merchant))


@portal_router.post(
    "/partners",
    status_code=status.HTTP_201_CREATED,
    summary="Create a partner organisation",
)
async def portal_create_partner(
    request: CreatePartnerRequest,
    identity: CallerIdentity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    partner = await partner_service.create_partner(
        db, identity, name=request.name, slug=request.slug, email=request.email
    )
    return ok(PartnerOut.dump(partner))


@portal_router.get("/partners", summary="List partners", description="Platform admins only")
async def portal_list_partners(
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    identity: CallerIdentity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    page = await partner_service.list_partners(db, identity, limit=limit, cursor=cursor)
    return ok([PartnerOut.dump(p) for p in page.items], page.meta())


@portal_router.get("/partners/{partner_id}", summary="Get a partner")
async def portal_get_partner(
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return ok(PartnerOut.dump(await partner_service.get_partner(db, scope)))


@portal_router.patch("/partners/{partner_id}", summary="Update partner details")
async def portal_update_partner(
    request: UpdatePartnerRequest,
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    partner = await partner_service.update_partner(
        db, scope, name=request.name, email=request.email
    )
    return ok(PartnerOut.dump(partner))


@portal_router.get("/partners/{partner_id}/merchants", summary="List a partner's merchants")
async def portal_list_partner_merchants(
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    page = await merchant_service.list_partner_merchants(db, scope, limit=limit, cursor=cursor)
    return ok([MerchantOut.dump(m) for m in page.items], page.meta())


@portal_router.post(
    "/merchants/{merchant_id}/cards",
    status_code=status.HTTP_201_CREATED,
    summary="Issue a card",
)
async def portal_create_card(
    request: CreateCardRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    issued = await card_service.create_card(
        db,
        scope,
        type=request.type,
        initial_balance=request.initial_balance,
        currency=request.currency,
        customer_id=request.customer_id,
        expires_at=request.expires_at,
        pin=request.pin,
        track_data=request.track_data,
        recipient_name=request.recipient_name,
        recipient_email=request.recipient_email,
        sender_name=request.sender_name,
        message=request.message,
    )
    if request.send_email and issued.card.recipient_email:
        merchant = await get_merchant(db, scope.merchant_id)
        await send_gift_card(db, issued.card, issued.redemption_code, merchant)
    return ok(issued.to_dict())


@portal_router.get("/merchants/{merchant_id}/cards", summary="List cards")
async def portal_list_cards(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    page = await card_service.list_cards(db, scope, status=status_filter, limit=limit, cursor=cursor)
    return ok([CardOut.dump(c) for c in page.items], page.meta())


@portal_router.patch("/merchants/{merchant_id}/cards/{card_id}", summary="Change card status")
async def portal_update_card_status(
    card_id: uuid.UUID,
    request: UpdateCardStatusRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    card = await card_service.update_status(db, scope, card_id, request.status)
    return ok(CardOut.dump(card))


@portal_router.post("/merchants/{merchant_id}/cards/{card_id}/load", summary="Load funds")
async def portal_load(
    card_id: uuid.UUID,
    request: LoadRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    txn = await ledger.load(
        db, scope, card_id, request.amount,
        description=request.description, reference=request.reference,
    )
    return ok(TransactionOut.dump(txn))


@portal_router.post("/merchants/{merchant_id}/cards/{card_id}/redeem", summary="Redeem funds")
async def portal_redeem(
    card_id: uuid.UUID,
    request: RedeemRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    txn = await ledger.redeem(
        db, scope, card_id, request.amount,
        description=request.description,
        reference=request.reference,
        redemption_method=request.redemption_method,
    )
    return ok(TransactionOut.dump(txn))


@portal_router.post("/merchants/{merchant_id}/cards/{card_id}/transfer", summary="Transfer value")
async def portal_transfer(
    card_id: uuid.UUID,
    request: TransferRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    result = await ledger.transfer(
        db, scope, card_id, request.to_card_id, request.amount,
        description=request.description, reference=request.reference,
    )
    return ok(result.to_dict())


@portal_router.post(
    "/merchants/{merchant_id}/cards/{card_id}/adjust",
    summary="Adjust a balance",
    description="Signed manual correction; owner or admin only",
)
async def portal_adjust(
    card_id: uuid.UUID,
    request: AdjustRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    txn = await ledger.adjust(
        db, scope, card_id, request.amount, request.reason, reference=request.reference
    )
    return ok(TransactionOut.dump(txn))


@portal_router.get("/merchants/{merchant_id}/transactions", summary="List transactions")
async def portal_list_transactions(
    type_filter: Optional[str] = Query(default=None, alias="type"),
    card_id: Optional[uuid.UUID] = Query(default=None, alias="cardId"),
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    page = await ledger.list_for_merchant(
        db, scope, type=type_filter, card_id=card_id, limit=limit, cursor=cursor
    )
    return ok([TransactionOut.dump(t) for t in page.items], page.meta())


@portal_router.post(
    "/merchants/{merchant_id}/transactions/{transaction_id}/refund",
    summary="Refund a redemption",
    description="Full refund of a redeem transaction; a redemption can be refunded once",
)
async def portal_refund(
    transaction_id: uuid.UUID,
    request: RefundRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    txn = await ledger.refund(
        db, scope, transaction_id, description=request.description, reference=request.reference
    )
    return ok(TransactionOut.dump(txn))


# API keys ------------------------------------------------------------------

async def _create_api_key(db: AsyncSession, scope: Scope, request: CreateApiKeyRequest) -> Dict[str, Any]:
    return await api_key_service.create_key(
        db,
        scope,
        name=request.name,
        permissions=request.permissions,
        environment=request.environment,
        rate_limit_per_minute=request.rate_limit_per_minute,
        rate_limit_per_day=request.rate_limit_per_day,
        allowed_merchant_ids=request.allowed_merchant_ids,
        expires_at=request.expires_at,
    )


@portal_router.post(
    "/merchants/{merchant_id}/api-keys",
    status_code=status.HTTP_201_CREATED,
    summary="Create a merchant API key",
    description="The plaintext key is returned once and never stored",
)
async def portal_create_merchant_key(
    request: CreateApiKeyRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return ok(await _create_api_key(db, scope, request))


@portal_router.post(
    "/partners/{partner_id}/api-keys",
    status_code=status.HTTP_201_CREATED,
    summary="Create a partner API key",
)
async def portal_create_partner_key(
    request: CreateApiKeyRequest,
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return ok(await _create_api_key(db, scope, request))


@portal_router.get("/merchants/{merchant_id}/api-keys", summary="List merchant API keys")
async def portal_list_merchant_keys(
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    keys = await api_key_service.list_keys(db, scope)
    return ok([ApiKeyOut.dump(k) for k in keys])


@portal_router.get("/partners/{partner_id}/api-keys", summary="List partner API keys")
async def portal_list_partner_keys(
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    keys = await api_key_service.list_keys(db, scope)
    return ok([ApiKeyOut.dump(k) for k in keys])


@portal_router.delete("/merchants/{merchant_id}/api-keys/{api_key_id}", summary="Revoke an API key")
async def portal_revoke_merchant_key(
    api_key_id: uuid.UUID,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    api_key = await api_key_service.revoke_key(db, scope, api_key_id)
    return ok(ApiKeyOut.dump(api_key))


@portal_router.delete("/partners/{partner_id}/api-keys/{api_key_id}", summary="Revoke a partner API key")
async def portal_revoke_partner_key(
    api_key_id: uuid.UUID,
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    api_key = await api_key_service.revoke_key(db, scope, api_key_id)
    return ok(ApiKeyOut.dump(api_key))


# Webhooks ------------------------------------------------------------------

@portal_router.post(
    "/merchants/{merchant_id}/webhooks",
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
)
async def portal_create_webhook(
    request: CreateWebhookEndpointRequest,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    endpoint = await create_endpoint(
        db, scope, request.url, request.events, description=request.description
    )
    data = WebhookEndpointOut.dump(endpoint)
    data["secret"] = endpoint.secret
    return ok(data)


@portal_router.post(
    "/partners/{partner_id}/webhooks",
    status_code=status.HTTP_201_CREATED,
    summary="Register a partner webhook endpoint",
)
async def portal_create_partner_webhook(
    request: CreateWebhookEndpointRequest,
    scope: Scope = Depends(partner_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    endpoint = await create_endpoint(
        db, scope, request.url, request.events, description=request.description
    )
    data = WebhookEndpointOut.dump(endpoint)
    data["secret"] = endpoint.secret
    return ok(data)


@portal_router.get("/merchants/{merchant_id}/webhooks", summary="List webhook endpoints")
async def portal_list_webhooks(
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    endpoints = await list_endpoints(db, scope)
    return ok([WebhookEndpointOut.dump(e) for e in endpoints])


@portal_router.delete("/merchants/{merchant_id}/webhooks/{endpoint_id}", summary="Delete a webhook endpoint")
async def portal_delete_webhook(
    endpoint_id: uuid.UUID,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    await delete_endpoint(db, scope, endpoint_id)
    return ok({"id": str(endpoint_id), "deleted": True})


@portal_router.post(
    "/merchants/{merchant_id}/webhooks/{endpoint_id}/reactivate",
    summary="Re-enable a disabled webhook endpoint",
)
async def portal_reactivate_webhook(
    endpoint_id: uuid.UUID,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    endpoint = await reactivate_endpoint(db, scope, endpoint_id)
    return ok(WebhookEndpointOut.dump(endpoint))


@portal_router.get(
    "/merchants/{merchant_id}/webhooks/{endpoint_id}/deliveries",
    summary="Recent deliveries of an endpoint",
)
async def portal_list_deliveries(
    endpoint_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=100),
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    deliveries = await list_deliveries(db, scope, endpoint_id, limit=limit)
    return ok([WebhookDeliveryOut.dump(d) for d in deliveries])


@portal_router.get(
    "/merchants/{merchant_id}/audit-logs",
    summary="Audit trail",
    description="Owner or admin only",
)
async def portal_audit_logs(
    limit: Optional[int] = Query(default=None, ge=1),
    cursor: Optional[str] = None,
    scope: Scope = Depends(merchant_scope),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    scope.require_elevated()
    page = await audit.list_for_merchant(db, scope.merchant_id, limit=limit, cursor=cursor)
    return ok(
        [
            {
                "id": str(entry.id),
                "action": entry.action,
                "resourceType": entry.resource_type,
                "resourceId": entry.resource_id,
                "actorId": entry.actor_id,
                "actorType": entry.actor_type,
                "details": entry.details,
                "createdAt": entry.created_at.isoformat(),
            }
            for entry in page.items
        ],
        page.meta(),
    )


# ============================================================================
# MONITORING
# ============================================================================

@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        result = await health_check.check_all()
        return result
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
