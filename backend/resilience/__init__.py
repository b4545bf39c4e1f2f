"""
Pulseboard - Resilience Primitives

Adaptive rate limiter, health circuit monitor, retry policy, session
recovery and request queue for quota-constrained upstream calls.
"""
from resilience.circuit_breaker import HealthCircuit, CircuitState
from resilience.errors import (
    AuthFailure,
    ErrorKind,
    ProgrammingError,
    RateLimitExceeded,
    ResilienceError,
    ServiceUnhealthy,
    TransientNetworkError,
)
from resilience.health_monitor import CircuitHealthMonitor
from resilience.probe_timeout import with_timeout, get_probe_timeout
from resilience.rate_limiter import AdaptiveRateLimiter
from resilience.request_queue import Priority, RequestQueue
from resilience.retry import RetryPolicy
from resilience.session_recovery import SessionRecovery
from resilience.token_bucket import TokenBucket

__all__ = [
    "AdaptiveRateLimiter",
    "AuthFailure",
    "CircuitHealthMonitor",
    "CircuitState",
    "ErrorKind",
    "HealthCircuit",
    "Priority",
    "ProgrammingError",
    "RateLimitExceeded",
    "RequestQueue",
    "ResilienceError",
    "RetryPolicy",
    "ServiceUnhealthy",
    "SessionRecovery",
    "TokenBucket",
    "TransientNetworkError",
    "get_probe_timeout",
    "with_timeout",
]
