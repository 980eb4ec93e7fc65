"""
Structured logging for the API and the scheduler worker.

Both processes log JSON lines through structlog. Stdlib loggers (uvicorn,
httpx, sqlalchemy) go through python-json-logger so every line on stdout
parses the same way. Card secrets never reach a log line: the redaction
processor masks them wherever they appear in an event.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from giftledger.config import get_settings

# Event keys whose values are secrets or raw card data
REDACTED_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "card_number",
        "key",
        "pin",
        "redemption_code",
        "secret",
        "track_data",
    }
)

QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask secret values, keeping the last four characters of card numbers."""
    for key in REDACTED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value is None:
            continue
        if key == "card_number" and isinstance(value, str) and len(value) > 4:
            event_dict[key] = "*" * (len(value) - 4) + value[-4:]
        else:
            event_dict[key] = "[REDACTED]"
    return event_dict


def _service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def _stdlib_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger. Safe to call more than once."""
    settings = get_settings()
    level = getattr(logging, settings.log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _service_context,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_stdlib_handler())
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.get_logger(__name__).debug(
        "logging_configured", log_level=settings.log_level, env=settings.app_env
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
