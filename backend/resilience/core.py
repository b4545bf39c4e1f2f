"""
Pulseboard Resilience - Composition Root

Builds the shared limiter, health monitor, retry policy, snapshot store,
request queue and (when configured) upstream client exactly once, so every
caller in the process sees the same bucket and the same circuit.

Usage:
    core = get_core()
    await core.start()
    ...
    await core.stop()
"""
import logging
from dataclasses import dataclass
from typing import Optional

from config import (
    API_HEALTH_URL,
    BACKEND_ANON_KEY,
    BACKEND_REST_PATH,
    BACKEND_URL,
    DATA_DIR,
    UPSTREAM_URL,
)
from resilience.health_monitor import CircuitHealthMonitor
from resilience.probes import (
    BackendReachabilityProbe,
    HttpProbe,
    LivenessProbe,
    LocalStorageProbe,
    RuntimeCapabilityProbe,
)
from resilience.rate_limiter import AdaptiveRateLimiter
from resilience.request_queue import RequestQueue
from resilience.retry import RetryPolicy
from resilience.session_recovery import SessionRecovery
from resilience.snapshot_store import SnapshotStore
from upstream.client import UpstreamClient

logger = logging.getLogger("pulseboard.resilience.core")


@dataclass
class ResilienceCore:
    limiter: AdaptiveRateLimiter
    monitor: CircuitHealthMonitor
    retry: RetryPolicy
    queue: RequestQueue
    snapshots: Optional[SnapshotStore] = None
    upstream: Optional[UpstreamClient] = None
    session: Optional[SessionRecovery] = None

    async def start(self):
        await self.monitor.start()

    async def stop(self):
        await self.monitor.stop()
        await self.queue.close()
        if self.upstream is not None:
            await self.upstream.close()

    def get_status(self) -> dict:
        status = {
            "rate_limiter": self.limiter.get_metrics(),
            "health": self.monitor.get_status(),
            "queue": self.queue.get_status(),
        }
        if self.upstream is not None:
            status["upstream"] = self.upstream.get_stats()
        return status


def default_probes() -> list:
    """Probe set derived from config: backend (critical), api, storage, runtime."""
    probes = []
    if BACKEND_URL:
        probes.append(BackendReachabilityProbe(BACKEND_URL, BACKEND_ANON_KEY, BACKEND_REST_PATH))
    if API_HEALTH_URL:
        probes.append(HttpProbe("api", API_HEALTH_URL))
    probes.append(LocalStorageProbe(DATA_DIR))
    probes.append(RuntimeCapabilityProbe())
    return probes


def build_core(probes: Optional[list] = None, snapshots: Optional[SnapshotStore] = None,
               with_upstream: bool = True, session: Optional[SessionRecovery] = None,
               upstream_url: str = "", transport=None) -> ResilienceCore:
    """
    Wire a fresh set of resilience instances.

    `session` is handed to the upstream client so auth-class failures get
    their single refresh attempt. `upstream_url` defaults to config.
    """
    limiter = AdaptiveRateLimiter()
    retry = RetryPolicy()
    if snapshots is None:
        snapshots = SnapshotStore()
    monitor = CircuitHealthMonitor(
        default_probes() if probes is None else probes,
        snapshot_store=snapshots,
    )
    queue = RequestQueue(limiter, retry, monitor)

    upstream = None
    upstream_url = upstream_url or UPSTREAM_URL
    if with_upstream and upstream_url:
        upstream = UpstreamClient(limiter, retry, monitor=monitor, session=session,
                                  base_url=upstream_url, transport=transport)
        monitor.register_probe(LivenessProbe("upstream", upstream.check_health))

    logger.info(
        f"Resilience core ready (probes: {len(monitor.probes)}, "
        f"upstream: {'on' if upstream else 'off'})"
    )
    return ResilienceCore(limiter, monitor, retry, queue, snapshots, upstream, session)


_instance: Optional[ResilienceCore] = None


def get_core() -> ResilienceCore:
    """Get or create the process-wide ResilienceCore singleton."""
    global _instance
    if _instance is None:
        _instance = build_core()
    return _instance


def reset_core():
    """Drop the singleton; the next get_core() builds fresh instances."""
    global _instance
    _instance = None
