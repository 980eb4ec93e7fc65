"""
Fixed-window rate limiter backed by the database.

For each window granularity the bucket is
``window_start = floor(now / duration) * duration``. A request is allowed
if it can increment its bucket's count while the count is below the
limit. The increment is a single conditional UPDATE, so two concurrent
requests can never both take the last slot; a missing bucket is created
under a unique constraint and a lost insert race falls back to the UPDATE.

A fixed window permits up to twice the limit across a window boundary.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftledger.config import get_settings
from giftledger.database.connection import get_session_factory
from giftledger.database.models import ApiKey, RateLimitWindow
from giftledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = {"minute": 60, "day": 86400}


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # unix seconds
    window_type: str

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


def window_start_for(now: float, window_type: str) -> int:
    duration = WINDOW_SECONDS[window_type]
    return int(now // duration) * duration


class RateLimiter:
    """
    Per-key minute and day counters.

    Each check runs and commits in its own session so the count sticks
    regardless of what happens to the request afterwards.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the rate limiter.

        Args:
            session_factory: Session factory (defaults to the global one)
            clock: Returns the current unix time in seconds
        """
        self._session_factory = session_factory
        self.clock = clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _try_increment(
        self, db: AsyncSession, api_key_id: uuid.UUID, window_type: str, start: int, limit: int
    ) -> Optional[int]:
        result = await db.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.api_key_id == api_key_id,
                RateLimitWindow.window_type == window_type,
                RateLimitWindow.window_start == start,
                RateLimitWindow.count < limit,
            )
            .values(count=RateLimitWindow.count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await db.scalar(
            select(RateLimitWindow.count).where(
                RateLimitWindow.api_key_id == api_key_id,
                RateLimitWindow.window_type == window_type,
                RateLimitWindow.window_start == start,
            )
        )

    async def check(self, api_key: ApiKey, window_type: str) -> RateLimitResult:
        """
        Count one request against a key's window.

        Args:
            api_key: Validated API key
            window_type: ``minute`` or ``day``

        Returns:
            RateLimitResult: Whether the request is allowed, with header metadata
        """
        limit = api_key.rate_limit_per_minute if window_type == "minute" else api_key.rate_limit_per_day
        now = self.clock()
        start = window_start_for(now, window_type)
        reset_at = start + WINDOW_SECONDS[window_type]

        for _ in range(2):
            async with self.session_factory() as db:
                try:
                    count = await self._try_increment(db, api_key.id, window_type, start, limit)
                    if count is None:
                        exists = await db.scalar(
                            select(RateLimitWindow.id).where(
                                RateLimitWindow.api_key_id == api_key.id,
                                RateLimitWindow.window_type == window_type,
                                RateLimitWindow.window_start == start,
                            )
                        )
                        if exists is not None:
                            await db.rollback()
                            metrics.record_rate_limit_denial(window_type)
                            return RateLimitResult(False, limit, 0, reset_at, window_type)
                        db.add(
                            RateLimitWindow(
                                api_key_id=api_key.id,
                                window_type=window_type,
                                window_start=start,
                                count=1,
                            )
                        )
                        count = 1
                    await db.commit()
                    return RateLimitResult(True, limit, max(limit - count, 0), reset_at, window_type)
                except IntegrityError:
                    # Another request created the window first; retry via UPDATE
                    await db.rollback()
                    logger.debug("rate_limit_window_insert_race", window_type=window_type)

        metrics.record_rate_limit_denial(window_type)
        return RateLimitResult(False, limit, 0, reset_at, window_type)

    async def sweep(self, retention_hours: Optional[int] = None) -> int:
        """
        Delete windows older than the retention period (48 hours by default).

        Returns:
            int: Number of windows deleted
        """
        hours = retention_hours or get_settings().rate_limit_retention_hours
        cutoff = int(self.clock()) - hours * 3600
        async with self.session_factory() as db:
            result = await db.execute(
                delete(RateLimitWindow)
                .where(RateLimitWindow.window_start < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info("rate_limit_windows_swept", deleted=deleted)
        metrics.record_sweep("rate_limit_cleanup", deleted, time.time())
        return deleted
