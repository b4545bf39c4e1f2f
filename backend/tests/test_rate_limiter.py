"""
Unit tests for AdaptiveRateLimiter: blocking waits, cancellation, feedback
adaptation and metrics. Time is driven by a fake clock and a fake sleep.
"""
import asyncio
import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.errors import ProgrammingError
from resilience.rate_limiter import AdaptiveRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and advances the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def limiter(clock, sleep):
    return AdaptiveRateLimiter(capacity=50, refill_rate=1.0, clock=clock, sleep=sleep)


# ──────────────────────────── Permission ──────────────────────────

class TestConsumeToken:
    def test_grants_and_deducts(self, limiter):
        assert limiter.consume_token() is True
        assert limiter.bucket.tokens == 49

    def test_denies_when_empty(self, limiter):
        limiter.bucket.drain()
        assert limiter.consume_token() is False
        metrics = limiter.get_metrics()
        assert metrics["counters"]["denied"] == 1

    def test_can_make_request_does_not_consume(self, limiter):
        assert limiter.can_make_request(5) is True
        assert limiter.bucket.tokens == 50

    def test_estimated_wait_time(self, limiter):
        limiter.bucket.drain()
        assert limiter.get_estimated_wait_time(2) == 2000


class TestWaitForTokens:
    @pytest.mark.asyncio
    async def test_returns_immediately_when_available(self, limiter, sleep):
        assert await limiter.wait_for_tokens(3) is True
        assert sleep.calls == []
        assert limiter.bucket.tokens == 47

    @pytest.mark.asyncio
    async def test_sleeps_for_estimated_shortfall(self, limiter, sleep):
        limiter.bucket.drain()
        assert await limiter.wait_for_tokens(3) is True
        assert sleep.calls == [3.0]
        assert limiter.bucket.tokens == 0

    @pytest.mark.asyncio
    async def test_unset_cancel_event_keeps_fake_time(self, limiter, sleep):
        limiter.bucket.drain()
        assert await limiter.wait_for_tokens(3, asyncio.Event()) is True
        assert sleep.calls == [3.0]
        assert limiter.bucket.tokens == 0

    @pytest.mark.asyncio
    async def test_long_waits_are_sliced(self, clock, sleep):
        limiter = AdaptiveRateLimiter(capacity=10, refill_rate=0.5, clock=clock, sleep=sleep)
        limiter.bucket.drain()
        assert await limiter.wait_for_tokens(10) is True
        assert sleep.calls == [5.0, 5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_cost_above_capacity_raises(self, limiter):
        with pytest.raises(ProgrammingError):
            await limiter.wait_for_tokens(51)

    @pytest.mark.asyncio
    async def test_shrink_below_cost_mid_wait_raises(self, clock):
        limiter = None

        async def braking_sleep(seconds):
            limiter.adapt_rate_limit(429)
            clock.advance(seconds)

        limiter = AdaptiveRateLimiter(capacity=10, refill_rate=1, clock=clock, sleep=braking_sleep)
        limiter.bucket.drain()
        with pytest.raises(ProgrammingError):
            await limiter.wait_for_tokens(8)

    @pytest.mark.asyncio
    async def test_cancelled_before_wait(self, limiter):
        limiter.bucket.drain()
        cancel = asyncio.Event()
        cancel.set()
        assert await limiter.wait_for_tokens(1, cancel) is False
        assert limiter.get_metrics()["counters"]["cancelled_waits"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_during_wait_leaves_bucket_untouched(self):
        limiter = AdaptiveRateLimiter(capacity=10, refill_rate=0.5)
        limiter.bucket.drain()
        cancel = asyncio.Event()

        async def cancel_soon():
            await asyncio.sleep(0.05)
            cancel.set()

        asyncio.create_task(cancel_soon())
        assert await limiter.wait_for_tokens(5, cancel) is False
        assert limiter.bucket.tokens == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self):
        limiter = AdaptiveRateLimiter(capacity=10, refill_rate=0.5)
        limiter.bucket.drain()
        task = asyncio.create_task(limiter.wait_for_tokens(5))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert limiter.bucket.tokens == 0


# ──────────────────────────── Feedback ──────────────────────────

class TestAdaptRateLimit:
    def test_high_utilization_shrinks(self, limiter):
        limiter.adapt_rate_limit(200, remaining_quota=10, total_quota=100)
        assert limiter.bucket.capacity == pytest.approx(40)
        assert limiter.bucket.refill_rate == pytest.approx(0.8)

    def test_low_utilization_grows(self, limiter):
        limiter.adapt_rate_limit(200, remaining_quota=90, total_quota=100)
        assert limiter.bucket.capacity == pytest.approx(55)
        assert limiter.bucket.refill_rate == pytest.approx(1.1)

    def test_mid_utilization_changes_nothing(self, limiter):
        limiter.adapt_rate_limit(200, remaining_quota=50, total_quota=100)
        assert limiter.bucket.capacity == 50
        assert limiter.get_metrics()["counters"]["adaptations"] == 0

    def test_shrink_respects_floor(self, limiter):
        for _ in range(30):
            limiter.adapt_rate_limit(200, remaining_quota=0, total_quota=100)
        assert limiter.bucket.capacity == 10
        assert limiter.bucket.refill_rate == 0.5

    def test_growth_respects_ceiling(self, limiter):
        for _ in range(30):
            limiter.adapt_rate_limit(200, remaining_quota=100, total_quota=100)
        assert limiter.bucket.capacity == 100
        assert limiter.bucket.refill_rate == 2

    def test_missing_quota_is_ignored(self, limiter):
        limiter.adapt_rate_limit(200)
        assert limiter.bucket.capacity == 50
        assert limiter.bucket.refill_rate == 1

    def test_429_halves_and_drains(self, limiter, clock):
        limiter.adapt_rate_limit(429)
        assert limiter.bucket.capacity == 25
        assert limiter.bucket.refill_rate == 0.5
        assert limiter.bucket.tokens == 0
        assert limiter.can_make_request() is False

        clock.advance(2)
        assert limiter.bucket.tokens == 1

    def test_repeated_429_respects_brake_floor(self, limiter):
        for _ in range(10):
            limiter.adapt_rate_limit(429)
        assert limiter.bucket.capacity == 5
        assert limiter.bucket.refill_rate == pytest.approx(0.2)
        assert limiter.get_metrics()["counters"]["throttle_responses"] == 10

    def test_adapt_from_headers(self, limiter):
        limiter.adapt_from_headers(200, {
            "X-RateLimit-Remaining-Requests": "5",
            "X-RateLimit-Limit-Requests": "100",
            "X-RateLimit-Reset-Requests": "30s",
        })
        assert limiter.bucket.capacity == pytest.approx(40)
        quota = limiter.get_metrics()["quota"]
        assert quota["utilization"] == 0.95
        assert quota["reset"] == "30s"

    def test_adapt_from_unparseable_headers(self, limiter):
        limiter.adapt_from_headers(200, {
            "x-ratelimit-remaining-requests": "lots",
            "x-ratelimit-limit-requests": "100",
        })
        assert limiter.bucket.capacity == 50

    def test_reset_tokens(self, limiter):
        limiter.adapt_rate_limit(429)
        limiter.reset_tokens()
        assert limiter.bucket.tokens == limiter.bucket.capacity


# ──────────────────────────── Metrics ──────────────────────────

class TestMetrics:
    def test_full_bucket(self, limiter):
        metrics = limiter.get_metrics()
        assert metrics["tokens_available"] == 50
        assert metrics["is_throttled"] is False
        assert metrics["utilization"] == 0
        assert metrics["estimated_wait_ms"] == 0

    def test_empty_bucket(self, limiter, clock):
        limiter.bucket.drain()
        clock.advance(0.25)
        metrics = limiter.get_metrics()
        assert metrics["is_throttled"] is True
        assert metrics["utilization"] == 1
        assert metrics["estimated_wait_ms"] == 1000
        assert metrics["next_refill_in_ms"] == 750
