"""
GiftLedger HTTP application.

Mounts the API key gateway (/api/v1), the portal routes used by signed-in
merchant staff (/portal) and the monitoring routes (/health, /metrics). Every error
leaves the app in the same envelope: {"success": false, "error": {...}}.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from giftledger.config import get_settings
from giftledger.core.errors import GiftLedgerError
from giftledger.database.connection import close_db, init_db
from giftledger.monitoring.logging import setup_logging

from .routes import api_router, monitoring_router, portal_router

setup_logging()
logger = structlog.get_logger(__name__)

VERSION = "1.0.0"

# Health check traffic is too frequent to log per request
UNLOGGED_PATHS = frozenset({"/health", "/health/live", "/health/ready", "/metrics"})


def error_response(http_status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=http_status,
        content={"success": False, "error": {"code": code, "message": message}},
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    settings = get_settings()
    logger.info("giftledger_starting", env=settings.app_env, version=VERSION)
    await init_db()

    yield

    await close_db()
    logger.info("giftledger_stopped")


async def request_context(request: Request, call_next: Any) -> Response:
    """Bind a request ID to every log line of the request and echo it back."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "http_request_crashed",
            method=request.method,
            path=request.url.path,
            error=str(e),
        )
        raise
    finally:
        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        structlog.contextvars.unbind_contextvars("request_id")

    response.headers["X-Request-ID"] = request_id
    if request.url.path not in UNLOGGED_PATHS:
        logger.info(
            "http_request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
    return response


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GiftLedgerError)
    async def ledger_error(request: Request, exc: GiftLedgerError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("ledger_error", code=exc.code, error=exc.message, path=request.url.path)
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.to_dict()},
        )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if not errors:
            return error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "Invalid request")
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first['msg']}" if field else first["msg"]
        return error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "An unexpected error occurred. Please try again later.",
        )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="GiftLedger",
        description=(
            "Multi-tenant gift card ledger: card issuance, loads, redemptions, "
            "transfers and refunds, behind API keys with per-key rate limits, "
            "plus signed webhooks and delivery emails."
        ),
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_context)
    install_error_handlers(app)

    app.include_router(api_router)
    app.include_router(portal_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"], include_in_schema=False)
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": VERSION,
            "environment": settings.app_env,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "giftledger.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )
