"""
Tests for the scheduler worker.
"""
import asyncio
from datetime import timedelta
from typing import Any, List

import pytest
from sqlalchemy import select

from giftledger.database.models import Card, utcnow
from giftledger.workers.scheduler import Scheduler


class FakeQueue:
    """Stands in for the email queue and the webhook engine."""

    def __init__(self, claimed: int = 0, fail: bool = False):
        self.claimed = claimed
        self.fail = fail
        self.calls: List[bool] = []
        self.drained = False

    async def process_batch(self, wait: bool = True) -> int:
        self.calls.append(wait)
        if self.fail:
            raise RuntimeError("provider unreachable")
        return self.claimed

    async def drain_inflight(self) -> None:
        self.drained = True


class FakeLimiter:
    def __init__(self, deleted: int = 0):
        self.deleted = deleted

    async def sweep(self) -> int:
        return self.deleted


def scheduler_with(**kwargs: Any) -> Scheduler:
    return Scheduler(
        webhook_engine=kwargs.get("webhook_engine") or FakeQueue(),
        email_queue=kwargs.get("email_queue") or FakeQueue(),
        rate_limiter=kwargs.get("rate_limiter") or FakeLimiter(),
    )


class TestScheduler:
    """Test suite for Scheduler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once(self, db: Any) -> None:
        """Test every job runs once and reports its item count."""
        emails = FakeQueue(claimed=2)
        webhooks = FakeQueue(claimed=3)
        scheduler = scheduler_with(
            email_queue=emails, webhook_engine=webhooks, rate_limiter=FakeLimiter(4)
        )

        results = await scheduler.run_once()

        assert results == {
            "email_drain": 2,
            "webhook_drain": 3,
            "card_expiry": 0,
            "rate_limit_cleanup": 4,
        }
        # Drains start sends without waiting for them
        assert emails.calls == [False]
        assert webhooks.calls == [False]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_others(self, db: Any) -> None:
        """Test a failing tick counts as zero and the remaining jobs still run."""
        scheduler = scheduler_with(email_queue=FakeQueue(fail=True), rate_limiter=FakeLimiter(1))

        results = await scheduler.run_once()

        assert results["email_drain"] == 0
        assert results["rate_limit_cleanup"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_expiry_job(self, db: Any, owner_scope: Any, make_card: Any) -> None:
        """Test the expiry job expires due cards in its own session."""
        issued = await make_card(owner_scope)
        issued.card.expires_at = utcnow() - timedelta(minutes=1)
        await db.commit()
        card_id = issued.card.id

        results = await scheduler_with().run_once()

        assert results["card_expiry"] == 1
        status = await db.scalar(
            select(Card.status).where(Card.id == card_id).execution_options(populate_existing=True)
        )
        assert status == "expired"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_stops_and_drains(self, db: Any) -> None:
        """Test stop() ends the loops and in-flight sends are awaited."""
        emails = FakeQueue()
        webhooks = FakeQueue()
        scheduler = scheduler_with(email_queue=emails, webhook_engine=webhooks)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert scheduler.running is False
        assert emails.calls == [False]
        assert webhooks.drained is True
        assert emails.drained is True
