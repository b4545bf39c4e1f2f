"""
Pulseboard Resilience - Circuit Health Monitor

Periodically runs the registered health probes, aggregates their results into
a MonitoringSnapshot and drives the HealthCircuit. After repeated failed
cycles the circuit opens: probing stops for the cooldown and callers are told
the system is not trustworthy.

Logs only on transitions (probe healthy <-> unhealthy, circuit open/close)
and for unhealthy critical probes, never on routine cycles.

Usage:
    monitor = CircuitHealthMonitor([BackendReachabilityProbe(url, key)])
    await monitor.start()
    if not monitor.is_trustworthy():
        ...  # skip expensive work
    print(monitor.generate_health_report())
"""
import asyncio
import dataclasses
import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import psutil

from config import _section
from resilience.circuit_breaker import HealthCircuit
from resilience.errors import ProbeTimeoutError, SnapshotTooLarge
from resilience.models import (
    ErrorCounter,
    HealthCheckResult,
    HealthStatus,
    MonitoringSnapshot,
    PerformanceFigures,
)
from resilience.probe_timeout import with_timeout
from resilience.probes import HealthProbe

logger = logging.getLogger("pulseboard.resilience.health_monitor")

_monitor_cfg = _section("health_monitor")

_DEFAULT_INTERVAL = float(_monitor_cfg.get("interval", 300))       # 5 minutes
_DEFAULT_MAX_FAILURES = int(_monitor_cfg.get("max_failures", 3))
_DEFAULT_COOLDOWN = float(_monitor_cfg.get("cooldown", 600))       # 10 minutes
_DEFAULT_PROBE_TIMEOUT = float(_monitor_cfg.get("probe_timeout", 0))  # 0 = per-probe lookup


class CircuitHealthMonitor:
    """
    Runs health probes on a schedule and maintains the health circuit.

    - CLOSED: every cycle probes; unhealthy critical probes count as failures.
    - OPEN: cycles are no-ops until the cooldown since the last attempt expires.
    - HALF_OPEN: the next cycle probes once; success closes, failure re-opens.
    """

    def __init__(self, probes: Iterable[HealthProbe] = (), interval: float = 0,
                 max_failures: int = 0, cooldown_sec: float = 0, probe_timeout: float = 0,
                 clock: Callable[[], float] = time.monotonic, snapshot_store=None):
        self._probes: list[HealthProbe] = list(probes)
        self._interval = interval or _DEFAULT_INTERVAL
        self._probe_timeout = probe_timeout or _DEFAULT_PROBE_TIMEOUT
        self.circuit = HealthCircuit(
            max_failures=max_failures or _DEFAULT_MAX_FAILURES,
            cooldown_sec=cooldown_sec or _DEFAULT_COOLDOWN,
            clock=clock,
        )
        self._snapshot_store = snapshot_store
        self._snapshot = MonitoringSnapshot()
        self._errors = ErrorCounter()
        self._last_status: dict[str, HealthStatus] = {}
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._broadcast: Optional[Callable] = None
        self._cycles_run = 0

    # ────────────────────── Registration ──────────────────────

    def register_probe(self, probe: HealthProbe):
        self._probes.append(probe)

    @property
    def probes(self) -> list[HealthProbe]:
        return list(self._probes)

    def set_broadcast(self, fn: Callable):
        """Set an async callback that receives JSON status events on transitions."""
        self._broadcast = fn

    # ────────────────────── Lifecycle ──────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, interval: float = 0):
        """Start the periodic cycle loop. A second start() while running is a no-op."""
        if interval:
            self._interval = interval
        if self.is_running:
            logger.debug("Health monitor already running")
            return
        self._task = asyncio.create_task(self._health_loop())
        logger.info(f"Health monitor started (interval: {self._interval}s, probes: {len(self._probes)})")

    async def stop(self):
        """Stop the cycle loop. Safe to call when already stopped."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Health monitor stopped")

    async def _health_loop(self):
        """Background loop: one cycle per interval."""
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Health cycle error: {e}")
            await asyncio.sleep(self._interval)

    # ────────────────────── Cycles ──────────────────────

    async def perform_health_check(self) -> list[HealthCheckResult]:
        """Run every probe once. A failing probe never aborts the others."""
        results = []
        for probe in self._probes:
            results.append(await self._run_probe(probe))
        return results

    async def _run_probe(self, probe: HealthProbe) -> HealthCheckResult:
        critical = bool(getattr(probe, "critical", False))
        try:
            outcome = await with_timeout(probe.run(), self._probe_timeout, probe.name)
        except ProbeTimeoutError as e:
            return HealthCheckResult(probe.name, HealthStatus.UNHEALTHY, error=str(e), critical=critical)
        except Exception as e:
            return HealthCheckResult(
                probe.name, HealthStatus.UNHEALTHY,
                error=str(e) or type(e).__name__, critical=critical,
            )
        return HealthCheckResult(
            service_name=probe.name,
            status=outcome.status,
            response_time_ms=outcome.latency_ms,
            error=outcome.error,
            critical=critical,
        )

    async def run_cycle(self) -> Optional[MonitoringSnapshot]:
        """
        One monitoring cycle. Returns the new snapshot, or None when skipped
        because the circuit is open and still cooling down.
        """
        async with self._cycle_lock:
            if not self.circuit.allow_probe():
                logger.debug(
                    f"Health cycle skipped: circuit open ({self.circuit.time_until_probe():.0f}s left)"
                )
                return None

            was_open = self.circuit.is_open
            self.circuit.mark_attempt()
            start = time.perf_counter()
            results = await self.perform_health_check()
            cycle_ms = (time.perf_counter() - start) * 1000

            critical_failures = [
                r for r in results if r.critical and r.status == HealthStatus.UNHEALTHY
            ]
            if critical_failures:
                self.circuit.record_failure()
            else:
                self.circuit.record_success()

            self._log_probe_transitions(results)
            for failure in critical_failures:
                logger.error(f"Critical probe unhealthy: {failure.service_name} - {failure.error}")

            self._cycles_run += 1
            self._snapshot = MonitoringSnapshot(
                health_checks=tuple(results),
                errors=self._errors,
                performance=self._performance(results, cycle_ms),
                is_online=not critical_failures,
                circuit=self.circuit.get_status(),
            )
            self._persist(self._snapshot)

        if was_open != self.circuit.is_open:
            await self._broadcast_status("circuit_open" if self.circuit.is_open else "circuit_closed")
        return self._snapshot

    def _log_probe_transitions(self, results: list[HealthCheckResult]):
        for result in results:
            previous = self._last_status.get(result.service_name)
            self._last_status[result.service_name] = result.status
            if previous is None or previous == result.status:
                continue
            if result.status == HealthStatus.HEALTHY:
                logger.info(f"Probe {result.service_name}: {previous.value} -> healthy")
            else:
                logger.warning(
                    f"Probe {result.service_name}: {previous.value} -> {result.status.value}"
                    + (f" ({result.error})" if result.error else "")
                )

    @staticmethod
    def _performance(results: list[HealthCheckResult], cycle_ms: float) -> PerformanceFigures:
        latencies = [r.response_time_ms for r in results if r.response_time_ms is not None]
        try:
            rss_mb = round(psutil.Process().memory_info().rss / 1024 / 1024, 2)
        except psutil.Error:
            rss_mb = None
        return PerformanceFigures(
            cycle_duration_ms=round(cycle_ms, 2),
            mean_probe_latency_ms=round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
            memory_rss_mb=rss_mb,
        )

    def _persist(self, snapshot: MonitoringSnapshot):
        if self._snapshot_store is None:
            return
        try:
            self._snapshot_store.save(snapshot)
        except SnapshotTooLarge as e:
            logger.warning(f"Snapshot not persisted: {e}")
        except sqlite3.Error as e:
            logger.warning(f"Snapshot store write failed: {e}")

    # ────────────────────── Readers ──────────────────────

    def is_trustworthy(self) -> bool:
        """False while the circuit is open; callers should skip expensive work."""
        return not self.circuit.is_open

    def record_error(self, message: str):
        """Feed the rolling error counter surfaced in the snapshot."""
        self._errors = ErrorCounter(
            count=self._errors.count + 1,
            last_error=message[:500],
            last_error_at=time.time(),
        )

    def get_snapshot(self) -> MonitoringSnapshot:
        """Immutable copy of the latest snapshot with current error and circuit figures."""
        return dataclasses.replace(
            self._snapshot,
            errors=self._errors,
            circuit=self.circuit.get_status(),
        )

    def generate_health_report(self) -> str:
        """Human-readable summary of the latest snapshot. Never probes."""
        snapshot = self.get_snapshot()
        checks = snapshot.health_checks
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")

        lines = [f"System Health Report ({now})"]
        if self._cycles_run == 0:
            lines.append("Overall Health: no health checks have run yet")
        else:
            lines.append(f"Overall Health: {snapshot.healthy_count}/{len(checks)} services healthy")

        circuit = snapshot.circuit
        circuit_line = (
            f"Circuit: {circuit.state} "
            f"({circuit.consecutive_failures}/{circuit.max_failures} consecutive failures)"
        )
        if circuit.time_until_probe:
            circuit_line += f", next probe in {circuit.time_until_probe:.0f}s"
        lines.append(circuit_line)
        lines.append("")

        for check in checks:
            line = f"{check.service_name}: {check.status.value.upper()}"
            if check.response_time_ms is not None:
                line += f" ({check.response_time_ms:.2f}ms)"
            if check.error:
                line += f" - {check.error}"
            lines.append(line)

        perf = snapshot.performance
        lines.append("")
        lines.append("Performance:")
        lines.append(f"- Last Cycle: {perf.cycle_duration_ms:.2f}ms")
        lines.append(f"- Mean Probe Latency: {perf.mean_probe_latency_ms:.2f}ms")
        if perf.memory_rss_mb is not None:
            lines.append(f"- Memory Usage: {perf.memory_rss_mb:.2f}MB")

        lines.append("")
        lines.append(f"Network: {'Online' if snapshot.is_online else 'Offline'}")

        if snapshot.errors.count > 0:
            lines.append("")
            lines.append(f"Errors: {snapshot.errors.count} total")
            if snapshot.errors.last_error:
                lines.append(f"Last Error: {snapshot.errors.last_error}")

        return "\n".join(lines) + "\n"

    def get_status(self) -> dict:
        """Return status for the health endpoint / dashboard."""
        return {
            "running": self.is_running,
            "interval": self._interval,
            "trustworthy": self.is_trustworthy(),
            "cycles_run": self._cycles_run,
            "snapshot": self.get_snapshot().to_json(),
        }

    async def _broadcast_status(self, event: str):
        """Send a circuit transition event to the broadcast callback."""
        if not self._broadcast:
            return
        try:
            await self._broadcast(json.dumps({
                "type": "health_circuit",
                "data": {"event": event, "circuit": dataclasses.asdict(self.circuit.get_status())},
            }))
        except Exception as e:
            logger.debug(f"Health broadcast failed: {e}")
