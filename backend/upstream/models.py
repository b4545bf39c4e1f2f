"""
Pulseboard - Upstream Call Models
Result contract between the upstream client and the dashboard collaborators.
"""
from dataclasses import dataclass
from typing import Any, Optional

from resilience.errors import ErrorKind

# User-facing messages per terminal error kind
USER_MESSAGES = {
    ErrorKind.RATE_LIMITED: "Service temporarily limited. Please try again in a few moments.",
    ErrorKind.SERVICE_UNHEALTHY: "Service temporarily limited. Please try again in a few minutes.",
    ErrorKind.TRANSIENT: "Network or server issue. Please try again shortly.",
    ErrorKind.AUTH: "Your session has expired. Please sign in again.",
}


@dataclass
class UpstreamResult:
    """Outcome of an UpstreamClient request."""
    ok: bool
    status_code: int = 0
    data: Any = None
    error: str = ""
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0
    reauth_required: bool = False
    cancelled: bool = False
    elapsed_ms: float = 0

    @property
    def user_message(self) -> str:
        if self.ok:
            return ""
        if self.error_kind in USER_MESSAGES:
            return USER_MESSAGES[self.error_kind]
        return f"Request failed: {self.error}" if self.error else "Request failed."

    @classmethod
    def failure(cls, message: str, kind: ErrorKind, status_code: int = 0, **extra) -> "UpstreamResult":
        return cls(ok=False, status_code=status_code, error=message, error_kind=kind, **extra)

    def to_json(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "attempts": self.attempts,
            "reauth_required": self.reauth_required,
            "cancelled": self.cancelled,
            "message": self.user_message,
        }
