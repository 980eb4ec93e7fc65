"""
Tests for the fixed-window rate limiter.
"""
import asyncio
from typing import Any, List

import pytest
from sqlalchemy import func, select

from giftledger.core.rate_limiter import RateLimiter, window_start_for
from giftledger.database.models import ApiKey, RateLimitWindow


class FakeClock:
    """Settable unix clock."""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    # 2026-01-01 00:00:10 UTC
    return FakeClock(1767225610.0)


async def make_key(db: Any, merchant: Any, per_minute: int = 3, per_day: int = 100) -> ApiKey:
    api_key = ApiKey(
        merchant_id=merchant.id,
        name="Limiter key",
        key_hash=f"hash-{per_minute}-{per_day}",
        key_prefix="lgf_test_abcd1234",
        environment="test",
        permissions=["cards:read"],
        rate_limit_per_minute=per_minute,
        rate_limit_per_day=per_day,
    )
    db.add(api_key)
    await db.commit()
    return api_key


class TestWindowStart:
    """Test suite for window bucketing."""

    @pytest.mark.unit
    def test_window_start_for(self) -> None:
        """Test buckets are aligned to the window duration."""
        assert window_start_for(125.0, "minute") == 120
        assert window_start_for(59.9, "minute") == 0
        assert window_start_for(86400 * 3 + 5, "day") == 86400 * 3


class TestRateLimiter:
    """Test suite for RateLimiter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_denies(
        self, db: Any, merchant: Any, clock: FakeClock
    ) -> None:
        """Test the request after the limit is denied with zero remaining."""
        api_key = await make_key(db, merchant, per_minute=3)
        limiter = RateLimiter(clock=clock)

        results = [await limiter.check(api_key, "minute") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert all(r.limit == 3 for r in results)
        assert results[0].reset_at == window_start_for(clock.now, "minute") + 60

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_denied_requests_do_not_count(
        self, db: Any, merchant: Any, clock: FakeClock
    ) -> None:
        """Test the stored count never exceeds the limit."""
        api_key = await make_key(db, merchant, per_minute=2)
        limiter = RateLimiter(clock=clock)

        for _ in range(5):
            await limiter.check(api_key, "minute")

        count = await db.scalar(
            select(RateLimitWindow.count).where(RateLimitWindow.api_key_id == api_key.id)
        )
        assert count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_window_resets_count(
        self, db: Any, merchant: Any, clock: FakeClock
    ) -> None:
        """Test the next minute starts a fresh bucket."""
        api_key = await make_key(db, merchant, per_minute=1)
        limiter = RateLimiter(clock=clock)

        assert (await limiter.check(api_key, "minute")).allowed is True
        assert (await limiter.check(api_key, "minute")).allowed is False

        clock.now += 60
        result = await limiter.check(api_key, "minute")

        assert result.allowed is True
        assert result.remaining == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_minute_and_day_windows_are_independent(
        self, db: Any, merchant: Any, clock: FakeClock
    ) -> None:
        """Test each window type keeps its own counter."""
        api_key = await make_key(db, merchant, per_minute=1, per_day=5)
        limiter = RateLimiter(clock=clock)

        assert (await limiter.check(api_key, "minute")).allowed is True
        day = await limiter.check(api_key, "day")

        assert day.allowed is True
        assert day.remaining == 4
        assert day.reset_at == window_start_for(clock.now, "day") + 86400

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_checks_never_exceed_limit(
        self, db: Any, merchant: Any, clock: FakeClock
    ) -> None:
        """Test concurrent checks admit exactly the limit."""
        api_key = await make_key(db, merchant, per_minute=5)
        limiter = RateLimiter(clock=clock)

        results: List[Any] = await asyncio.gather(
            *(limiter.check(api_key, "minute") for _ in range(10))
        )

        assert sum(1 for r in results if r.allowed) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_headers(self, db: Any, merchant: Any, clock: FakeClock) -> None:
        """Test the response headers mirror the result."""
        api_key = await make_key(db, merchant, per_minute=10)
        limiter = RateLimiter(clock=clock)

        result = await limiter.check(api_key, "minute")

        assert result.headers() == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "9",
            "X-RateLimit-Reset": str(result.reset_at),
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_removes_old_windows(
        self, db: Any, merchant: Any, clock: FakeClock
    ) -> None:
        """Test windows older than the retention period are deleted."""
        api_key = await make_key(db, merchant)
        limiter = RateLimiter(clock=clock)

        await limiter.check(api_key, "minute")
        clock.now += 49 * 3600
        await limiter.check(api_key, "minute")

        deleted = await limiter.sweep()

        assert deleted == 1
        remaining = await db.scalar(select(func.count()).select_from(RateLimitWindow))
        assert remaining == 1
