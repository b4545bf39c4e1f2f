"""
Pulseboard Resilience - Adaptive Rate Limiter

Token-bucket throttle for the quota-constrained upstream API. Callers either
block in wait_for_tokens() or peek with can_make_request() to disable an
action up front. Upstream responses are fed back through adapt_rate_limit()
so the bucket shrinks under pressure and grows back when quota is plentiful.

Usage:
    limiter = AdaptiveRateLimiter()
    await limiter.wait_for_tokens()
    resp = await client.get(...)
    limiter.adapt_from_headers(resp.status_code, resp.headers)
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from config import _section
from resilience.probe_timeout import cancellable_sleep
from resilience.token_bucket import TokenBucket, DEFAULT_CAPACITY, DEFAULT_REFILL_RATE

logger = logging.getLogger("pulseboard.resilience.rate_limiter")


# Load defaults from config.json -> "rate_limit": {"capacity": 50, "refill_rate": 1, ...}
_rate_cfg = _section("rate_limit")

_DEFAULT_CAPACITY = float(_rate_cfg.get("capacity", DEFAULT_CAPACITY))
_DEFAULT_REFILL_RATE = float(_rate_cfg.get("refill_rate", DEFAULT_REFILL_RATE))
_MAX_WAIT_SLICE_MS = int(_rate_cfg.get("max_wait_slice_ms", 5000))

# Feedback thresholds on upstream quota utilization
HIGH_UTILIZATION = 0.8
LOW_UTILIZATION = 0.3

SHRINK_FACTOR = 0.8
GROW_FACTOR = 1.1
BRAKE_FACTOR = 0.5

MIN_CAPACITY = 10.0
MIN_REFILL_RATE = 0.5
MAX_CAPACITY = 100.0
MAX_REFILL_RATE = 2.0

BRAKE_MIN_CAPACITY = 5.0
BRAKE_MIN_REFILL_RATE = 0.2

# Standard upstream quota headers
REMAINING_HEADER = "x-ratelimit-remaining-requests"
LIMIT_HEADER = "x-ratelimit-limit-requests"
RESET_HEADER = "x-ratelimit-reset-requests"


@dataclass
class _Counters:
    granted: int = 0
    denied: int = 0
    waits: int = 0
    cancelled_waits: int = 0
    throttle_responses: int = 0
    adaptations: int = 0


class AdaptiveRateLimiter:
    """
    Wraps a TokenBucket with blocking waits, upstream feedback and metrics.

    Never raises for throttling: callers learn about it through return values.
    Asking for more tokens than the bucket holds is a ProgrammingError.
    """

    def __init__(self, capacity: float = 0, refill_rate: float = 0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], object] = asyncio.sleep,
                 max_wait_slice_ms: int = 0):
        self._clock = clock
        self._sleep = sleep
        self._max_wait_slice_ms = max_wait_slice_ms or _MAX_WAIT_SLICE_MS
        self._bucket = TokenBucket(
            capacity=capacity or _DEFAULT_CAPACITY,
            refill_rate=refill_rate or _DEFAULT_REFILL_RATE,
            clock=clock,
        )
        self._counters = _Counters()
        self._last_quota: dict = {}

    @property
    def bucket(self) -> TokenBucket:
        return self._bucket

    # ────────────────────── Permission ──────────────────────

    def consume_token(self, cost: float = 1) -> bool:
        """Take `cost` tokens now if they are available."""
        ok = self._bucket.consume(cost)
        if ok:
            self._counters.granted += 1
        else:
            self._counters.denied += 1
        return ok

    async def wait_for_tokens(self, cost: float = 1,
                              cancel: Optional[asyncio.Event] = None) -> bool:
        """
        Suspend until `cost` tokens are consumed.

        Sleeps in slices of at most max_wait_slice_ms so a mid-wait
        adapt_rate_limit() is noticed promptly. Returns False if `cancel`
        fires first; the bucket is left untouched in that case.
        """
        self._bucket.validate_cost(cost)
        waited = False
        while not self.consume_token(cost):
            if not waited:
                waited = True
                self._counters.waits += 1
            # Capacity may have shrunk below cost while we slept
            self._bucket.validate_cost(cost)
            delay_ms = min(self._bucket.estimated_wait_ms(cost), self._max_wait_slice_ms)
            delay_ms = max(delay_ms, 1)
            logger.debug(f"Throttled: waiting {delay_ms}ms for {cost} token(s)")
            cancelled = await cancellable_sleep(delay_ms / 1000, cancel, self._sleep)
            if cancelled:
                self._counters.cancelled_waits += 1
                logger.debug("Token wait cancelled by caller")
                return False
        return True

    def can_make_request(self, cost: float = 1) -> bool:
        return self._bucket.has(cost)

    def get_estimated_wait_time(self, cost: float = 1) -> int:
        """Estimated milliseconds until `cost` tokens are available."""
        return self._bucket.estimated_wait_ms(cost)

    # ────────────────────── Feedback ──────────────────────

    def adapt_rate_limit(self, status_code: int, remaining_quota: Optional[float] = None,
                         total_quota: Optional[float] = None, reset: Optional[str] = None):
        """
        Adjust bucket limits from an upstream response.

        Quota utilization above 80% shrinks limits by 20%, below 30% grows
        them by 10%; in between nothing changes. A 429 halves the limits and
        empties the bucket so every waiter sits out a refill cycle.
        """
        capacity = self._bucket.capacity
        refill_rate = self._bucket.refill_rate

        if remaining_quota is not None and total_quota:
            utilization = (total_quota - remaining_quota) / total_quota
            self._last_quota = {
                "remaining": remaining_quota,
                "limit": total_quota,
                "reset": reset,
                "utilization": round(utilization, 3),
            }
            if utilization > HIGH_UTILIZATION:
                capacity = max(capacity * SHRINK_FACTOR, MIN_CAPACITY)
                refill_rate = max(refill_rate * SHRINK_FACTOR, MIN_REFILL_RATE)
            elif utilization < LOW_UTILIZATION:
                capacity = min(capacity * GROW_FACTOR, MAX_CAPACITY)
                refill_rate = min(refill_rate * GROW_FACTOR, MAX_REFILL_RATE)

        if status_code == 429:
            capacity = max(capacity * BRAKE_FACTOR, BRAKE_MIN_CAPACITY)
            refill_rate = max(refill_rate * BRAKE_FACTOR, BRAKE_MIN_REFILL_RATE)
            self._counters.throttle_responses += 1

        if capacity != self._bucket.capacity or refill_rate != self._bucket.refill_rate:
            old_capacity = self._bucket.capacity
            self._bucket.resize(capacity, refill_rate)
            self._counters.adaptations += 1
            logger.info(
                f"Rate limit adapted: capacity {old_capacity:.1f} -> {capacity:.1f}, "
                f"refill {refill_rate:.2f}/s (status {status_code})"
            )

        if status_code == 429:
            self._bucket.drain()
            logger.warning("Upstream returned 429: bucket drained")

    def adapt_from_headers(self, status_code: int, headers: Optional[Mapping[str, str]] = None):
        """Parse standard quota headers and feed them to adapt_rate_limit()."""
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        remaining = _parse_number(lowered.get(REMAINING_HEADER))
        total = _parse_number(lowered.get(LIMIT_HEADER))
        reset = lowered.get(RESET_HEADER)
        if remaining is None or total is None:
            remaining = total = None
        self.adapt_rate_limit(status_code, remaining, total, reset)

    def reset_tokens(self):
        """Emergency escape hatch: refill to capacity."""
        self._bucket.fill()
        logger.info("Rate limiter tokens reset to capacity")

    # ────────────────────── Metrics ──────────────────────

    def get_metrics(self) -> dict:
        """Current bucket state and counters for dashboards."""
        tokens = self._bucket.tokens
        capacity = self._bucket.capacity
        last_refill = self._bucket.last_refill_at
        return {
            "tokens_available": round(tokens, 3),
            "capacity": round(capacity, 3),
            "refill_rate": round(self._bucket.refill_rate, 3),
            "next_refill_in_ms": max(0, round((last_refill + 1.0 - self._clock()) * 1000)),
            "is_throttled": tokens < 1,
            "estimated_wait_ms": self._bucket.estimated_wait_ms(min(1, capacity)),
            "utilization": round((capacity - tokens) / capacity, 3),
            "quota": dict(self._last_quota),
            "counters": {
                "granted": self._counters.granted,
                "denied": self._counters.denied,
                "waits": self._counters.waits,
                "cancelled_waits": self._counters.cancelled_waits,
                "throttle_responses": self._counters.throttle_responses,
                "adaptations": self._counters.adaptations,
            },
        }


def _parse_number(raw) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None
