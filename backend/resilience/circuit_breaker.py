"""
Pulseboard Resilience - Health Circuit

Circuit state owned by the CircuitHealthMonitor:
CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

A cycle counts as a failure when any critical probe is unhealthy. After
max_failures consecutive failures the circuit opens and probing stops until
the cooldown has elapsed since the last attempt; the next cycle then runs as
a HALF_OPEN probe which either closes the circuit or re-opens it.

Usage:
    circuit = HealthCircuit(max_failures=3, cooldown_sec=600)
    if circuit.allow_probe():
        circuit.mark_attempt()
        circuit.record_success() if ok else circuit.record_failure()
"""
import logging
import time
from enum import Enum
from typing import Callable, Optional

from resilience.models import CircuitStatus

logger = logging.getLogger("pulseboard.resilience.circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"       # Normal: cycles run, system trusted
    OPEN = "OPEN"           # Tripped: probing skipped until cooldown elapses
    HALF_OPEN = "HALF_OPEN" # Cooldown over: next cycle decides


class HealthCircuit:
    """
    Consecutive-failure circuit with a cooldown measured from the last attempt.

    Not locked: the monitor serializes cycles, and every method here is
    synchronous so it cannot be interleaved within one event loop.
    """

    def __init__(self, max_failures: int = 3, cooldown_sec: float = 600.0,
                 clock: Callable[[], float] = time.monotonic):
        self._max_failures = max_failures
        self._cooldown_sec = cooldown_sec
        self._clock = clock

        self.state = CircuitState.CLOSED
        self._failures = 0
        self._last_attempt: float = 0.0
        self._last_success_at: Optional[float] = None
        self._last_state_change: float = clock()

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def max_failures(self) -> int:
        return self._max_failures

    @property
    def is_open(self) -> bool:
        return self.state != CircuitState.CLOSED

    @property
    def last_success_at(self) -> Optional[float]:
        """Wall-clock time of the last successful cycle."""
        return self._last_success_at

    def allow_probe(self) -> bool:
        """Whether a cycle may probe now. Moves OPEN -> HALF_OPEN once cooled down."""
        if self.state == CircuitState.OPEN:
            if self._clock() - self._last_attempt >= self._cooldown_sec:
                self._transition(CircuitState.HALF_OPEN)
                return True
            return False
        return True

    def mark_attempt(self):
        self._last_attempt = self._clock()

    def record_success(self):
        self._failures = 0
        self._last_success_at = time.time()
        if self.state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def record_failure(self):
        self._failures += 1
        if self.state == CircuitState.HALF_OPEN:
            # Probe after cooldown failed: back to OPEN, cooldown restarts
            self._transition(CircuitState.OPEN)
        elif self.state == CircuitState.CLOSED and self._failures >= self._max_failures:
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState):
        old = self.state
        self.state = new_state
        self._last_state_change = self._clock()
        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Health circuit: {old.value} -> OPEN after {self._failures} failed cycle(s); "
                f"probing paused for {self._cooldown_sec:.0f}s"
            )
        else:
            logger.info(f"Health circuit: {old.value} -> {new_state.value}")

    def time_until_probe(self) -> float:
        """Seconds remaining before an OPEN circuit allows the next probe."""
        if self.state != CircuitState.OPEN:
            return 0.0
        elapsed = self._clock() - self._last_attempt
        return max(0.0, self._cooldown_sec - elapsed)

    def get_status(self) -> CircuitStatus:
        return CircuitStatus(
            state=self.state.value,
            consecutive_failures=self._failures,
            max_failures=self._max_failures,
            last_success_at=self._last_success_at,
            time_until_probe=round(self.time_until_probe(), 1),
        )

    def reset(self):
        """Manual reset: force back to CLOSED."""
        self._failures = 0
        if self.state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
