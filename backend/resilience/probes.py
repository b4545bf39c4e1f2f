"""
Pulseboard Resilience - Health Probes

Independent, side-effect-free checks run by the CircuitHealthMonitor.
Each probe exposes `name`, `critical` and `async run() -> ProbeResult`.
Critical probes feed the circuit's trust model; the rest only show up in
the snapshot and report.
"""
import importlib.util
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Sequence, Union

import httpx

from resilience.models import HealthStatus, ProbeResult

logger = logging.getLogger("pulseboard.resilience.probes")

# Modules the resilience layer cannot run without
REQUIRED_MODULES = ("asyncio", "json", "sqlite3", "ssl", "httpx")


class HealthProbe(Protocol):
    name: str
    critical: bool

    async def run(self) -> ProbeResult: ...


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class HttpProbe:
    """
    HEAD request against an HTTP endpoint.

    2xx/3xx -> healthy, any other status -> degraded (reachable but unhappy),
    transport error -> unhealthy.
    """

    def __init__(self, name: str, url: str, headers: Optional[dict] = None,
                 critical: bool = False, method: str = "HEAD",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.name = name
        self.url = url
        self.critical = critical
        self._headers = headers or {}
        self._method = method
        self._transport = transport

    async def run(self) -> ProbeResult:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.request(self._method, self.url, headers=self._headers)
        except httpx.HTTPError as e:
            return ProbeResult.unhealthy(str(e) or type(e).__name__, _elapsed_ms(start))

        latency = _elapsed_ms(start)
        if resp.is_success or resp.is_redirect:
            return ProbeResult(HealthStatus.HEALTHY, latency)
        return ProbeResult(HealthStatus.DEGRADED, latency, f"HTTP {resp.status_code}")


class BackendReachabilityProbe(HttpProbe):
    """Connectivity to the backend-as-a-service REST endpoint (critical)."""

    def __init__(self, base_url: str, anon_key: str = "", rest_path: str = "/rest/v1/",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"apikey": anon_key} if anon_key else {}
        super().__init__(
            name="backend",
            url=base_url.rstrip("/") + rest_path,
            headers=headers,
            critical=True,
            transport=transport,
        )


class LocalStorageProbe:
    """Write/read/delete a scratch file in the data directory."""

    def __init__(self, directory: Union[str, Path], critical: bool = False):
        self.name = "local_storage"
        self.critical = critical
        self._directory = Path(directory)

    async def run(self) -> ProbeResult:
        start = time.perf_counter()
        try:
            fd, path = tempfile.mkstemp(prefix="__health_check__", dir=self._directory)
            try:
                with os.fdopen(fd, "w") as f:
                    f.write("test")
                if Path(path).read_text() != "test":
                    return ProbeResult.unhealthy("Read-back mismatch", _elapsed_ms(start))
            finally:
                os.unlink(path)
        except OSError as e:
            return ProbeResult.unhealthy(str(e), _elapsed_ms(start))
        return ProbeResult.healthy(_elapsed_ms(start))


class RuntimeCapabilityProbe:
    """Verify that required modules are importable in this interpreter."""

    def __init__(self, required: Sequence[str] = REQUIRED_MODULES, critical: bool = False):
        self.name = "runtime"
        self.critical = critical
        self._required = tuple(required)

    async def run(self) -> ProbeResult:
        missing = [m for m in self._required if importlib.util.find_spec(m) is None]
        if missing:
            return ProbeResult.unhealthy(f"Unsupported features: {', '.join(missing)}")
        return ProbeResult.healthy()


class LivenessProbe:
    """
    Generic liveness check around an async callable.

    The callable may return a ProbeResult, or a bool (True = healthy).
    """

    def __init__(self, name: str, check: Callable[[], Awaitable[Union[bool, ProbeResult]]],
                 critical: bool = False):
        self.name = name
        self.critical = critical
        self._check = check

    async def run(self) -> ProbeResult:
        start = time.perf_counter()
        outcome = await self._check()
        if isinstance(outcome, ProbeResult):
            return outcome
        if outcome:
            return ProbeResult.healthy(_elapsed_ms(start))
        return ProbeResult.unhealthy("Liveness check returned false", _elapsed_ms(start))
