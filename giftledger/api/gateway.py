"""
API gateway dispatcher for ``/api/v1``.

Pipeline, in order:
1. Route match by method and path template (static segments win)
2. JSON body parse
3. Bearer key extraction and validation by hash lookup
4. Rate limits: minute window, then day window
5. Route permission check
6. Merchant scope resolution and the handler, in one transaction
7. Request log row, in its own transaction

Every request that gets past step 3 leaves a request log row, whatever
its outcome. Failures at steps 1-3 are answered without one since no key
identity exists yet.
"""
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftledger.core.api_keys import api_key_service
from giftledger.core.constants import API_KEY_PREFIX
from giftledger.core.errors import (
    GiftLedgerError,
    InternalError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from giftledger.core.identity import Scope, resolve_api_key_scope
from giftledger.core.rate_limiter import RateLimiter, RateLimitResult
from giftledger.database.connection import get_session_factory
from giftledger.database.models import ApiKey
from giftledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"
BODY_METHODS = frozenset({"POST", "PATCH", "PUT"})

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


@dataclass
class GatewayRequest:
    """Inbound request as seen by route handlers."""

    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)  # lower-cased names
    client_host: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)
    resolved_merchant_id: Optional[uuid.UUID] = None

    @property
    def ip_address(self) -> Optional[str]:
        forwarded = self.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return self.client_host

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")

    def requested_merchant_id(self) -> Optional[str]:
        """Target merchant named by a partner key, from the body or the query string."""
        value = self.body.get("merchantId") or self.body.get("merchant_id")
        value = value or self.query.get("merchantId") or self.query.get("merchant_id")
        return str(value) if value else None


@dataclass
class HandlerResult:
    data: Any
    meta: Optional[Dict[str, Any]] = None
    status_code: int = 200


@dataclass
class GatewayResponse:
    status_code: int
    body: Optional[Dict[str, Any]]
    headers: Dict[str, str] = field(default_factory=dict)


RouteHandler = Callable[[AsyncSession, Optional[Scope], GatewayRequest], Awaitable[HandlerResult]]


def success_response(
    result: HandlerResult, headers: Optional[Dict[str, str]] = None
) -> GatewayResponse:
    body: Dict[str, Any] = {"success": True, "data": result.data}
    if result.meta is not None:
        body["meta"] = result.meta
    return GatewayResponse(result.status_code, body, dict(headers or {}))


def error_response(
    error: GiftLedgerError, headers: Optional[Dict[str, str]] = None
) -> GatewayResponse:
    return GatewayResponse(
        error.http_status, {"success": False, "error": error.to_dict()}, dict(headers or {})
    )


# ============================================================================
# ROUTING
# ============================================================================

@dataclass(frozen=True)
class Route:
    method: str
    pattern: str
    handler: RouteHandler
    permission: Optional[str] = None  # None: public route

    @property
    def segments(self) -> Tuple[str, ...]:
        return tuple(s for s in self.pattern.split("/") if s)

    @property
    def specificity(self) -> Tuple[int, ...]:
        """Sort key: a static segment beats a parameter at the same position."""
        return tuple(1 if s.startswith(":") else 0 for s in self.segments)

    def match(self, path: str) -> Optional[Dict[str, str]]:
        parts = [p for p in path.split("/") if p]
        segments = self.segments
        if len(parts) != len(segments):
            return None
        params: Dict[str, str] = {}
        for segment, part in zip(segments, parts):
            if segment.startswith(":"):
                params[segment[1:]] = unquote(part)
            elif segment != part:
                return None
        return params


class Router:
    """Route table keyed by method and path template (``/cards/:cardId``)."""

    def __init__(self, prefix: str = API_PREFIX):
        self.prefix = prefix.rstrip("/")
        self.routes: List[Route] = []

    def route(
        self, method: str, pattern: str, permission: Optional[str] = None
    ) -> Callable[[RouteHandler], RouteHandler]:
        def decorator(handler: RouteHandler) -> RouteHandler:
            self.routes.append(
                Route(method.upper(), self.prefix + pattern, handler, permission)
            )
            return handler

        return decorator

    def match(self, method: str, path: str) -> Optional[Tuple[Route, Dict[str, str]]]:
        candidates = []
        for route in self.routes:
            if route.method != method:
                continue
            params = route.match(path)
            if params is not None:
                candidates.append((route.specificity, route, params))
        if not candidates:
            return None
        _, route, params = min(candidates, key=lambda c: c[0])
        return route, params


# ============================================================================
# DISPATCH
# ============================================================================

class Gateway:
    """Authenticates, throttles, authorizes and dispatches API key requests."""

    def __init__(
        self,
        router: Router,
        rate_limiter: Optional[RateLimiter] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.router = router
        self.rate_limiter = rate_limiter or RateLimiter(session_factory=session_factory)
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def handle(
        self,
        method: str,
        path: str,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        raw_body: bytes,
        client_host: Optional[str] = None,
    ) -> GatewayResponse:
        """
        Run one request through the pipeline.

        Args:
            method: HTTP method
            path: Full request path (``/api/v1/...``)
            query: Query string parameters
            headers: Request headers
            raw_body: Unparsed request body
            client_host: Peer address, used when X-Forwarded-For is absent

        Returns:
            GatewayResponse: Status, JSON body and headers
        """
        start = time.perf_counter()
        method = method.upper()

        if method == "OPTIONS":
            return GatewayResponse(204, None, dict(CORS_HEADERS))

        matched = self.router.match(method, path)
        if matched is None:
            response = error_response(
                NotFoundError("Endpoint not found")
            )
            metrics.record_gateway_request("unmatched", 404, time.perf_counter() - start)
            return response
        route, params = matched

        request = GatewayRequest(
            method=method,
            path=path,
            query=dict(query),
            headers={k.lower(): v for k, v in headers.items()},
            client_host=client_host,
            params=params,
        )

        if method in BODY_METHODS and raw_body:
            try:
                body = json.loads(raw_body)
            except ValueError:
                body = None
            if not isinstance(body, dict):
                response = error_response(
                    ValidationError("Invalid JSON in request body")
                )
                metrics.record_gateway_request(route.pattern, 400, time.perf_counter() - start)
                return response
            request.body = body

        if route.permission is None:
            response = await self._run_handler(route, None, request)
        else:
            response = await self._handle_authenticated(route, request, start)

        metrics.record_gateway_request(
            route.pattern, response.status_code, time.perf_counter() - start
        )
        return response

    async def _handle_authenticated(
        self, route: Route, request: GatewayRequest, start: float
    ) -> GatewayResponse:
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return error_response(
                UnauthorizedError(
                    f"Missing or invalid Authorization header. Expected: Bearer {API_KEY_PREFIX}..."
                )
            )
        token = auth[len("Bearer "):].strip()
        if not token.startswith(API_KEY_PREFIX):
            return error_response(UnauthorizedError("Invalid API key format"))

        try:
            api_key = await self._validate_key(token)
        except GiftLedgerError as e:
            logger.info("api_key_rejected", code=e.code, path=request.path)
            return error_response(e)

        minute = await self.rate_limiter.check(api_key, "minute")
        if not minute.allowed:
            return await self._rate_limited(
                api_key, request, minute, start, "Rate limit exceeded. Try again later."
            )
        day = await self.rate_limiter.check(api_key, "day")
        if not day.allowed:
            return await self._rate_limited(
                api_key, request, day, start, "Daily rate limit exceeded. Try again tomorrow."
            )
        rate_headers = minute.headers()

        if route.permission not in (api_key.permissions or []):
            error = PermissionDeniedError(
                f"API key missing required permission: {route.permission}"
            )
            logger.warning(
                "api_permission_denied",
                api_key_id=str(api_key.id),
                permission=route.permission,
            )
            await self._log_request(api_key, request, error.http_status, start, None, error.message)
            return error_response(error, rate_headers)

        response = await self._run_handler(route, api_key, request)
        error_message = None
        if response.body and not response.body.get("success", True):
            error_message = response.body["error"]["message"]
        await self._log_request(
            api_key,
            request,
            response.status_code,
            start,
            request.resolved_merchant_id,
            error_message,
        )
        response.headers.update(rate_headers)
        return response

    async def _validate_key(self, token: str) -> ApiKey:
        async with self.session_factory() as db:
            try:
                api_key = await api_key_service.validate_key(db, token)
                await db.commit()
                return api_key
            except Exception:
                await db.rollback()
                raise

    async def _rate_limited(
        self,
        api_key: ApiKey,
        request: GatewayRequest,
        result: RateLimitResult,
        start: float,
        message: str,
    ) -> GatewayResponse:
        logger.warning(
            "rate_limit_exceeded",
            api_key_id=str(api_key.id),
            window=result.window_type,
            limit=result.limit,
        )
        log_message = "Daily rate limit exceeded" if result.window_type == "day" else "Rate limit exceeded"
        await self._log_request(api_key, request, 429, start, None, log_message)
        return error_response(
            RateLimitedError(message), result.headers()
        )

    async def _run_handler(
        self, route: Route, api_key: Optional[ApiKey], request: GatewayRequest
    ) -> GatewayResponse:
        """Resolve scope and run the handler in one unit of work."""
        async with self.session_factory() as db:
            try:
                scope = None
                if api_key is not None:
                    scope = await resolve_api_key_scope(db, api_key, request.requested_merchant_id())
                    request.resolved_merchant_id = scope.merchant_id
                result = await route.handler(db, scope, request)
                await db.commit()
                return success_response(result)
            except GiftLedgerError as e:
                await db.rollback()
                return error_response(e)
            except Exception as e:
                await db.rollback()
                logger.exception(
                    "api_handler_unexpected_error",
                    route=route.pattern,
                    method=route.method,
                    error=str(e),
                )
                return error_response(
                    InternalError("An unexpected error occurred")
                )

    async def _log_request(
        self,
        api_key: ApiKey,
        request: GatewayRequest,
        status_code: int,
        start: float,
        merchant_id: Optional[uuid.UUID],
        error_message: Optional[str],
    ) -> None:
        """Persist the request log row in its own transaction."""
        duration_ms = int((time.perf_counter() - start) * 1000)
        async with self.session_factory() as db:
            try:
                await api_key_service.log_request(
                    db,
                    api_key_id=api_key.id,
                    merchant_id=merchant_id or api_key.merchant_id,
                    method=request.method,
                    path=request.path,
                    status_code=status_code,
                    duration_ms=duration_ms,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    error_message=error_message,
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(
                    "api_request_log_failed",
                    api_key_id=str(api_key.id),
                    path=request.path,
                    error=str(e),
                )
