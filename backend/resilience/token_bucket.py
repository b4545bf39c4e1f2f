"""
Pulseboard Resilience - Token Bucket

Capacity/refill state machine behind the adaptive rate limiter.
Refill is lazy: tokens are credited from elapsed monotonic time whenever the
bucket is touched, so skipped ticks or a suspended process never desync it.

Usage:
    bucket = TokenBucket(capacity=50, refill_rate=1.0)
    if bucket.consume(1):
        ...
"""
import logging
import math
import threading
import time
from typing import Callable

from resilience.errors import ProgrammingError

logger = logging.getLogger("pulseboard.resilience.token_bucket")

DEFAULT_CAPACITY = 50.0
DEFAULT_REFILL_RATE = 1.0  # tokens per second


class TokenBucket:
    """
    Thread-safe token bucket with lazy, whole-second refill.

    Invariant: 0 <= tokens <= capacity after every public call.
    """

    def __init__(self, capacity: float = DEFAULT_CAPACITY, refill_rate: float = DEFAULT_REFILL_RATE,
                 clock: Callable[[], float] = time.monotonic):
        if capacity <= 0 or refill_rate <= 0:
            raise ProgrammingError(
                f"capacity and refill_rate must be positive (got {capacity}, {refill_rate})"
            )
        self._clock = clock
        self._lock = threading.Lock()
        self._capacity = float(capacity)
        self._refill_rate = float(refill_rate)
        self._tokens = float(capacity)
        self._last_refill = clock()

    # ────────────────────── Introspection ──────────────────────

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def refill_rate(self) -> float:
        return self._refill_rate

    @property
    def last_refill_at(self) -> float:
        return self._last_refill

    @property
    def tokens(self) -> float:
        """Current token count, after crediting elapsed time."""
        with self._lock:
            self._refill()
            return self._tokens

    def has(self, cost: float = 1) -> bool:
        with self._lock:
            self._refill()
            return self._tokens >= cost

    def estimated_wait_ms(self, cost: float = 1) -> int:
        """Milliseconds until `cost` tokens should be available (0 if they already are)."""
        with self._lock:
            self._refill()
            if self._tokens >= cost:
                return 0
            return math.ceil((cost - self._tokens) / self._refill_rate * 1000)

    # ────────────────────── Mutation ──────────────────────

    def consume(self, cost: float = 1) -> bool:
        """Deduct `cost` tokens if available. Leaves state untouched on failure."""
        self.validate_cost(cost)
        with self._lock:
            self._refill()
            if self._tokens >= cost:
                self._tokens -= cost
                return True
            return False

    def drain(self):
        """Empty the bucket and restart the refill clock (hard braking after a 429)."""
        with self._lock:
            self._tokens = 0.0
            self._last_refill = self._clock()

    def fill(self):
        """Refill to capacity and restart the refill clock."""
        with self._lock:
            self._tokens = self._capacity
            self._last_refill = self._clock()

    def resize(self, capacity: float, refill_rate: float):
        """Change limits; current tokens are clamped to the new capacity."""
        if capacity <= 0 or refill_rate <= 0:
            raise ProgrammingError(
                f"capacity and refill_rate must be positive (got {capacity}, {refill_rate})"
            )
        with self._lock:
            self._refill()
            self._capacity = float(capacity)
            self._refill_rate = float(refill_rate)
            self._tokens = min(self._tokens, self._capacity)

    def validate_cost(self, cost: float):
        """A cost the bucket can never satisfy would starve the caller forever."""
        if cost <= 0:
            raise ProgrammingError(f"Token cost must be positive (got {cost})")
        if cost > self._capacity:
            raise ProgrammingError(
                f"Token cost {cost} exceeds bucket capacity {self._capacity}"
            )

    def _refill(self):
        """Credit whole elapsed seconds. Called under lock."""
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed < 0:
            # Clock went backwards: rebase instead of granting anything
            self._last_refill = now
            return

        whole_seconds = math.floor(elapsed)
        tokens_to_add = whole_seconds * self._refill_rate
        if tokens_to_add > 0:
            self._tokens = min(self._tokens + tokens_to_add, self._capacity)
            # Keep the fractional remainder so partial seconds are not lost
            self._last_refill += whole_seconds
