"""
Pulseboard Resilience - Error Taxonomy

Every failure the control plane reasons about has an ErrorKind. Exceptions
raised at the boundaries carry their kind explicitly so the retry policy can
classify them without looking at message text.
"""
from enum import Enum


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"            # Soft: queue or wait
    SERVICE_UNHEALTHY = "service_unhealthy"  # Circuit open: skip or degrade
    TRANSIENT = "transient"                  # Retry with backoff
    AUTH = "auth"                            # Never retry: one-shot session recovery
    PROGRAMMING = "programming"              # Fatal, caller bug
    UNKNOWN = "unknown"


class ResilienceError(Exception):
    """Base class for errors raised by the resilience layer."""
    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceeded(ResilienceError):
    """Local or upstream rate limit hit."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "Rate limit exceeded", status_code: int | None = None,
                 retry_after_ms: int | None = None):
        super().__init__(message, status_code)
        self.retry_after_ms = retry_after_ms


class ServiceUnhealthy(ResilienceError):
    """The health circuit is open; the operation was skipped."""
    kind = ErrorKind.SERVICE_UNHEALTHY


class TransientNetworkError(ResilienceError):
    """Timeouts, resets, 5xx: worth retrying."""
    kind = ErrorKind.TRANSIENT


class AuthFailure(ResilienceError):
    """Token, credential or permission failure. Never retried."""
    kind = ErrorKind.AUTH


class ProgrammingError(ResilienceError, ValueError):
    """Caller misuse, e.g. requesting more tokens than the bucket can ever hold."""
    kind = ErrorKind.PROGRAMMING


class ProbeTimeoutError(ResilienceError):
    """A health probe did not finish within its time budget."""
    kind = ErrorKind.TRANSIENT

    def __init__(self, probe_name: str, timeout_sec: float):
        super().__init__(f"Probe '{probe_name}' timed out after {timeout_sec}s")
        self.probe_name = probe_name
        self.timeout_sec = timeout_sec


class SnapshotTooLarge(ResilienceError):
    """A serialized monitoring snapshot exceeds the persistence size cap."""
    kind = ErrorKind.PROGRAMMING

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(f"Snapshot is {size_bytes} bytes (limit {limit_bytes})")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class OperationCancelled(ResilienceError):
    """The caller abandoned the operation while it was waiting."""
