"""
Pulseboard Resilience - Data Models
Probe results and the monitoring snapshot handed out to readers.
"""
import json
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ProbeResult:
    """What a single probe reports about its own check."""
    status: HealthStatus
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def healthy(cls, latency_ms: Optional[float] = None) -> "ProbeResult":
        return cls(status=HealthStatus.HEALTHY, latency_ms=latency_ms)

    @classmethod
    def unhealthy(cls, error: str, latency_ms: Optional[float] = None) -> "ProbeResult":
        return cls(status=HealthStatus.UNHEALTHY, latency_ms=latency_ms, error=error)


@dataclass(frozen=True)
class HealthCheckResult:
    """A probe outcome stamped with the service name and observation time."""
    service_name: str
    status: HealthStatus
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    observed_at: float = field(default_factory=time.time)
    critical: bool = False

    def to_json(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class ErrorCounter:
    count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[float] = None


@dataclass(frozen=True)
class PerformanceFigures:
    cycle_duration_ms: float = 0.0
    mean_probe_latency_ms: float = 0.0
    memory_rss_mb: Optional[float] = None


@dataclass(frozen=True)
class CircuitStatus:
    state: str = "CLOSED"
    consecutive_failures: int = 0
    max_failures: int = 3
    last_success_at: Optional[float] = None
    time_until_probe: float = 0.0


@dataclass(frozen=True)
class MonitoringSnapshot:
    """Latest aggregate view of system health. Immutable; replaced every cycle."""
    health_checks: tuple[HealthCheckResult, ...] = ()
    errors: ErrorCounter = ErrorCounter()
    performance: PerformanceFigures = PerformanceFigures()
    is_online: bool = False
    circuit: CircuitStatus = CircuitStatus()
    generated_at: float = field(default_factory=time.time)

    @property
    def healthy_count(self) -> int:
        return sum(1 for c in self.health_checks if c.status == HealthStatus.HEALTHY)

    def to_json(self) -> dict:
        return {
            "health_checks": [c.to_json() for c in self.health_checks],
            "errors": asdict(self.errors),
            "performance": asdict(self.performance),
            "is_online": self.is_online,
            "circuit": asdict(self.circuit),
            "generated_at": self.generated_at,
        }

    def serialize(self) -> str:
        return json.dumps(self.to_json(), separators=(",", ":"))
