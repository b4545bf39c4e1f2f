"""
Pulseboard Resilience - Retry Policy

Classifies failures and retries only the transient ones, with capped
exponential backoff. Auth-class failures are never retried: the caller hands
them to SessionRecovery instead, so "refresh" and "retry" never compound.

Usage:
    policy = RetryPolicy()
    outcome = await policy.execute(lambda: client.get(url), max_attempts=3)
    if not outcome.ok and outcome.classification.auth_class:
        await session_recovery.recover()
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import _section
from resilience.errors import ErrorKind, OperationCancelled, ProgrammingError, ResilienceError
from resilience.probe_timeout import cancellable_sleep

logger = logging.getLogger("pulseboard.resilience.retry")

_retry_cfg = _section("retry")

_DEFAULT_BASE_DELAY_MS = int(_retry_cfg.get("base_delay_ms", 1000))
_DEFAULT_MAX_DELAY_MS = int(_retry_cfg.get("max_delay_ms", 30000))
_DEFAULT_MAX_ATTEMPTS = int(_retry_cfg.get("max_attempts", 3))
_DEFAULT_JITTER = float(_retry_cfg.get("jitter", 0.2))

# Fallback keyword sets for errors that only arrive as text.
# Auth terms are checked first and always win.
AUTH_TERMS = (
    "401", "403", "jwt", "invalid token", "invalid_token", "token expired", "expired token",
    "refresh token", "credential", "permission", "unauthorized", "unauthenticated",
    "not authenticated", "authentication", "forbidden", "invalid api key", "invalid_grant",
    "team_id", "tenant", "row level security", "pgrst116",
)
TRANSIENT_TERMS = (
    "timeout", "timed out", "econnreset", "econnrefused", "enotfound", "etimedout",
    "network error", "failed to fetch", "connection reset", "connection refused",
    "connection", "dns", "too many requests", "429", "rate limit", "unavailable",
    "502", "503", "504",
)

AUTH_STATUS_CODES = {401, 403}
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    retryable: bool
    auth_class: bool = False


_AUTH = Classification(ErrorKind.AUTH, retryable=False, auth_class=True)
_TRANSIENT = Classification(ErrorKind.TRANSIENT, retryable=True)
_RATE_LIMITED = Classification(ErrorKind.RATE_LIMITED, retryable=True)
_UNKNOWN = Classification(ErrorKind.UNKNOWN, retryable=False)


@dataclass(frozen=True)
class RetryAttempt:
    attempt_index: int
    error: str
    kind: ErrorKind
    next_delay_ms: Optional[int]


@dataclass
class RetryOutcome:
    """Result of RetryPolicy.execute(): a value, or the terminal failure."""
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    classification: Optional[Classification] = None
    attempts: int = 0
    history: list[RetryAttempt] = field(default_factory=list)
    cancelled: bool = False

    def raise_for_outcome(self):
        """Re-raise the terminal error for callers that prefer exceptions."""
        if not self.ok and self.error is not None:
            raise self.error
        return self.value


class RetryPolicy:
    """Error classifier plus capped exponential backoff."""

    def __init__(self, base_delay_ms: int = 0, max_delay_ms: int = 0, jitter: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.base_delay_ms = base_delay_ms or _DEFAULT_BASE_DELAY_MS
        self.max_delay_ms = max_delay_ms or _DEFAULT_MAX_DELAY_MS
        self.jitter = _DEFAULT_JITTER if jitter is None else jitter
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ────────────────────── Classification ──────────────────────

    def classify(self, error: BaseException) -> Classification:
        """Decide whether `error` is worth retrying. Auth failures never are."""
        if isinstance(error, OperationCancelled):
            return _UNKNOWN
        if isinstance(error, ResilienceError):
            if error.status_code is not None:
                by_status = self._classify_status(error.status_code)
                if by_status is not None:
                    return by_status
            if error.kind == ErrorKind.AUTH:
                return _AUTH
            if error.kind == ErrorKind.TRANSIENT:
                return _TRANSIENT
            if error.kind == ErrorKind.RATE_LIMITED:
                return _RATE_LIMITED
            if error.kind != ErrorKind.UNKNOWN or error.status_code is not None:
                return Classification(error.kind, retryable=False)

        if isinstance(error, httpx.HTTPStatusError):
            by_status = self._classify_status(error.response.status_code)
            return _UNKNOWN if by_status is None else by_status

        if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
            return _TRANSIENT
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return _TRANSIENT
        if isinstance(error, PermissionError):
            return _AUTH

        return self._classify_text(str(error) or type(error).__name__)

    @staticmethod
    def _classify_status(status_code: int) -> Optional[Classification]:
        if status_code in AUTH_STATUS_CODES:
            return _AUTH
        if status_code == 429:
            return _RATE_LIMITED
        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            return _TRANSIENT
        return None

    @staticmethod
    def _classify_text(message: str) -> Classification:
        """Boundary adapter for errors that arrive as unstructured text."""
        text = message.lower()
        if any(term in text for term in AUTH_TERMS):
            return _AUTH
        if any(term in text for term in TRANSIENT_TERMS):
            return _TRANSIENT
        return _UNKNOWN

    # ────────────────────── Backoff ──────────────────────

    def next_delay(self, attempt_index: int) -> int:
        """min(base * 2^attempt, cap) in milliseconds."""
        return min(self.base_delay_ms * (2 ** attempt_index), self.max_delay_ms)

    def jittered_delay(self, attempt_index: int) -> int:
        """next_delay() spread by +/- jitter to avoid synchronized retry storms."""
        delay = self.next_delay(attempt_index)
        if self.jitter <= 0:
            return delay
        spread = delay * self.jitter
        return max(0, round(delay + self._rng.uniform(-spread, spread)))

    # ────────────────────── Execution ──────────────────────

    async def execute(self, operation: Callable[[], Awaitable[Any]], max_attempts: int = 0,
                      cancel: Optional[asyncio.Event] = None) -> RetryOutcome:
        """
        Run `operation` until it succeeds, hits a non-retryable error, or
        max_attempts is exhausted. Never raises for operation failures.
        """
        max_attempts = max_attempts or _DEFAULT_MAX_ATTEMPTS
        history: list[RetryAttempt] = []

        for attempt in range(max_attempts):
            try:
                value = await operation()
                return RetryOutcome(ok=True, value=value, attempts=attempt + 1, history=history)
            except (asyncio.CancelledError, ProgrammingError):
                raise
            except Exception as e:
                classification = self.classify(e)
                last_attempt = attempt + 1 >= max_attempts
                delay_ms = None if (last_attempt or not classification.retryable) else self.jittered_delay(attempt)
                history.append(RetryAttempt(attempt, str(e), classification.kind, delay_ms))

                if delay_ms is None:
                    if classification.retryable:
                        logger.warning(f"Giving up after {attempt + 1} attempt(s): {e}")
                    else:
                        logger.info(f"Not retrying {classification.kind.value} error: {e}")
                    return RetryOutcome(
                        ok=False, error=e, classification=classification,
                        attempts=attempt + 1, history=history,
                    )

                logger.info(
                    f"Attempt {attempt + 1}/{max_attempts} failed ({classification.kind.value}), "
                    f"retrying in {delay_ms}ms"
                )
                if await cancellable_sleep(delay_ms / 1000, cancel, self._sleep):
                    return RetryOutcome(
                        ok=False, error=e, classification=classification,
                        attempts=attempt + 1, history=history, cancelled=True,
                    )

        # Unreachable with max_attempts >= 1
        return RetryOutcome(ok=False, attempts=0, history=history)
