"""
Health checks for the ledger API and its background queues.

/health reports the database and the outbound email and webhook backlogs.
A backlog older than HEALTH_BACKLOG_SECONDS degrades the service without
taking it out of rotation; only a database failure makes it unhealthy.
"""
import time
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, text

from giftledger.config import get_settings
from giftledger.database.connection import get_session_factory
from giftledger.database.models import EmailQueueEntry, WebhookDelivery, utcnow

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """A dependency check could not complete."""


class HealthCheck:
    """Runs the dependency checks behind the monitoring routes."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """Round-trip a trivial query and report how long it took."""
        started = time.perf_counter()
        try:
            async with get_session_factory()() as db:
                await db.scalar(text("SELECT 1"))
        except Exception as e:
            logger.error("health_database_unreachable", error=str(e))
            raise HealthCheckError(f"Database unreachable: {e}") from e

        return {
            "status": HEALTHY,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    async def check_queues(self) -> Dict[str, Any]:
        """Pending counts and the age of the oldest pending row per outbound queue."""
        limit = self.settings.health_backlog_seconds
        queues: Dict[str, Any] = {}
        try:
            async with get_session_factory()() as db:
                for name, model in (("email", EmailQueueEntry), ("webhooks", WebhookDelivery)):
                    row = (
                        await db.execute(
                            select(func.count(), func.min(model.created_at)).where(
                                model.status == "pending"
                            )
                        )
                    ).one()
                    queues[name] = _backlog(row[0], row[1], limit)
        except Exception as e:
            logger.error("health_queue_check_failed", error=str(e))
            raise HealthCheckError(f"Queue check failed: {e}") from e

        stale = [name for name, q in queues.items() if q["status"] != HEALTHY]
        if stale:
            logger.warning("health_queue_backlog", queues=stale, limit_seconds=limit)
        return {"status": DEGRADED if stale else HEALTHY, **queues}

    async def check_all(self) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        overall = HEALTHY

        for name, check in (("database", self.check_database), ("queues", self.check_queues)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": UNHEALTHY, "error": str(e)}

        if checks["database"]["status"] == UNHEALTHY:
            overall = UNHEALTHY
        elif checks["queues"]["status"] != HEALTHY:
            overall = DEGRADED

        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        # Process-level only, so a database outage does not restart pods
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready once the database answers; queue backlogs do not block traffic."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": UNHEALTHY, "checks": {"database": {"status": UNHEALTHY, "error": str(e)}}}
        return {"status": HEALTHY, "checks": {"database": database}}


def _backlog(pending: int, oldest: Optional[datetime], limit: float) -> Dict[str, Any]:
    age = (utcnow() - oldest).total_seconds() if oldest is not None else 0.0
    return {
        "status": DEGRADED if age > limit else HEALTHY,
        "pending": pending,
        "oldest_pending_seconds": round(age, 1),
    }
