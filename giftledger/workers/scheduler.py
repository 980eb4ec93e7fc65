"""
Scheduler background worker.

Runs the periodic jobs as independent asyncio loops:
- email drain (every 60 s)
- webhook drain (every 60 s)
- card expiry sweep (hourly)
- rate limit window sweep (hourly)

Each tick is a short unit of work with its own session that takes at most
a batch of due items. Jobs never assume exclusive access, so several
scheduler processes may run side by side.
"""
import asyncio
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from giftledger.config import get_settings
from giftledger.core.cards import card_service
from giftledger.core.email import EmailQueue
from giftledger.core.rate_limiter import RateLimiter
from giftledger.core.webhooks import WebhookDeliveryEngine
from giftledger.database.connection import close_db, session_scope
from giftledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


@dataclass
class Job:
    name: str
    interval_seconds: float
    run: Callable[[], Awaitable[int]]


async def expire_cards() -> int:
    """Expire one batch of cards past their expiry date."""
    async with session_scope() as db:
        return await card_service.expire_cards(db)


class Scheduler:
    """Runs each job on its own fixed interval until stopped."""

    def __init__(
        self,
        webhook_engine: Optional[WebhookDeliveryEngine] = None,
        email_queue: Optional[EmailQueue] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        settings = get_settings()
        self.webhook_engine = webhook_engine or WebhookDeliveryEngine()
        self.email_queue = email_queue or EmailQueue()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.jobs: List[Job] = [
            Job(
                "email_drain",
                settings.email_drain_interval_seconds,
                lambda: self.email_queue.process_batch(wait=False),
            ),
            Job(
                "webhook_drain",
                settings.webhook_drain_interval_seconds,
                lambda: self.webhook_engine.process_batch(wait=False),
            ),
            Job("card_expiry", settings.card_expiry_interval_seconds, expire_cards),
            Job(
                "rate_limit_cleanup",
                settings.rate_limit_sweep_interval_seconds,
                self.rate_limiter.sweep,
            ),
        ]
        self._stop = asyncio.Event()

    def stop(self) -> None:
        logger.info("scheduler_stopping")
        self._stop.set()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    async def run_once(self) -> Dict[str, int]:
        """Run every job one time, in order. Used by ``--once`` and tests."""
        results: Dict[str, int] = {}
        for job in self.jobs:
            results[job.name] = await self._tick(job)
        return results

    async def _tick(self, job: Job) -> int:
        try:
            count = await job.run()
            if count:
                logger.info("scheduler_job_completed", job=job.name, items=count)
            return count
        except Exception as e:
            # A failed tick is retried on the next interval
            logger.error("scheduler_job_failed", job=job.name, error=str(e))
            return 0

    async def _loop(self, job: Job) -> None:
        logger.info("scheduler_job_started", job=job.name, interval_seconds=job.interval_seconds)
        while self.running:
            await self._tick(job)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=job.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run(self) -> None:
        """Run all job loops until stop() is called, then wait for in-flight sends."""
        try:
            await asyncio.gather(*(self._loop(job) for job in self.jobs))
        finally:
            await self.webhook_engine.drain_inflight()
            await self.email_queue.drain_inflight()


async def start_scheduler(once: bool = False) -> None:
    """
    Start the scheduler worker.

    Args:
        once: Run each job a single time and exit
    """
    setup_logging()
    logger.info("scheduler_worker_starting", once=once)

    scheduler = Scheduler()

    if not once:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)

    try:
        if once:
            results = await scheduler.run_once()
            await scheduler.webhook_engine.drain_inflight()
            await scheduler.email_queue.drain_inflight()
            logger.info("scheduler_run_once_completed", **results)
        else:
            await scheduler.run()
    except Exception as e:
        logger.error("scheduler_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("scheduler_worker_stopped")


def main(argv: Optional[List[Any]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="GiftLedger scheduler worker")
    parser.add_argument(
        "--once", action="store_true", help="Run every job one time and exit"
    )
    args = parser.parse_args(argv)

    asyncio.run(start_scheduler(once=args.once))


if __name__ == "__main__":
    main()
