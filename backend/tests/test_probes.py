"""
Unit tests for health probes and probe timeouts.
HTTP is served by httpx.MockTransport (no real services needed).
"""
import asyncio
import sys
from pathlib import Path

import httpx
import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.errors import ProbeTimeoutError
from resilience.models import HealthStatus, ProbeResult
from resilience.probe_timeout import cancellable_sleep, get_probe_timeout, with_timeout
from resilience.probes import (
    BackendReachabilityProbe,
    HttpProbe,
    LivenessProbe,
    LocalStorageProbe,
    RuntimeCapabilityProbe,
)


def _transport(status_code: int = 200, seen: list = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code)
    return httpx.MockTransport(handler)


# ──────────────────────────── HTTP Probes ──────────────────────────

class TestHttpProbe:
    @pytest.mark.asyncio
    async def test_success_is_healthy(self):
        probe = HttpProbe("api", "https://api.example.test/health", transport=_transport(200))
        result = await probe.run()
        assert result.status == HealthStatus.HEALTHY
        assert result.latency_ms is not None

    @pytest.mark.asyncio
    async def test_error_status_is_degraded(self):
        probe = HttpProbe("api", "https://api.example.test/health", transport=_transport(503))
        result = await probe.run()
        assert result.status == HealthStatus.DEGRADED
        assert result.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_transport_error_is_unhealthy(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        probe = HttpProbe("api", "https://api.example.test/health",
                          transport=httpx.MockTransport(handler))
        result = await probe.run()
        assert result.status == HealthStatus.UNHEALTHY
        assert "Connection refused" in result.error

    @pytest.mark.asyncio
    async def test_uses_head_by_default(self):
        seen = []
        probe = HttpProbe("api", "https://api.example.test/health", transport=_transport(200, seen))
        await probe.run()
        assert seen[0].method == "HEAD"


class TestBackendReachabilityProbe:
    @pytest.mark.asyncio
    async def test_targets_rest_endpoint_with_key(self):
        seen = []
        probe = BackendReachabilityProbe(
            "https://project.example.test/", anon_key="anon-123",
            transport=_transport(200, seen),
        )
        result = await probe.run()

        assert probe.name == "backend"
        assert probe.critical is True
        assert result.status == HealthStatus.HEALTHY
        assert str(seen[0].url) == "https://project.example.test/rest/v1/"
        assert seen[0].headers["apikey"] == "anon-123"

    @pytest.mark.asyncio
    async def test_no_key_no_header(self):
        seen = []
        probe = BackendReachabilityProbe("https://project.example.test", transport=_transport(200, seen))
        await probe.run()
        assert "apikey" not in seen[0].headers


# ──────────────────────────── Local Probes ──────────────────────────

class TestLocalStorageProbe:
    @pytest.mark.asyncio
    async def test_writable_directory_is_healthy(self, tmp_path):
        result = await LocalStorageProbe(tmp_path).run()
        assert result.status == HealthStatus.HEALTHY
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_directory_is_unhealthy(self, tmp_path):
        result = await LocalStorageProbe(tmp_path / "missing").run()
        assert result.status == HealthStatus.UNHEALTHY
        assert result.error


class TestRuntimeCapabilityProbe:
    @pytest.mark.asyncio
    async def test_available_modules(self):
        result = await RuntimeCapabilityProbe(("json", "sqlite3")).run()
        assert result.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_missing_module_is_named(self):
        result = await RuntimeCapabilityProbe(("json", "no_such_module_here")).run()
        assert result.status == HealthStatus.UNHEALTHY
        assert result.error == "Unsupported features: no_such_module_here"


class TestLivenessProbe:
    @pytest.mark.asyncio
    async def test_true_is_healthy(self):
        async def check():
            return True

        result = await LivenessProbe("liveness", check).run()
        assert result.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_false_is_unhealthy(self):
        async def check():
            return False

        result = await LivenessProbe("liveness", check).run()
        assert result.status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_probe_result_passes_through(self):
        async def check():
            return ProbeResult(HealthStatus.DEGRADED, 12.0, "slow")

        result = await LivenessProbe("liveness", check).run()
        assert result == ProbeResult(HealthStatus.DEGRADED, 12.0, "slow")


# ──────────────────────────── Timeouts ──────────────────────────

class TestProbeTimeouts:
    def test_builtin_lookup(self):
        assert get_probe_timeout("backend") == 10
        assert get_probe_timeout("api") == 10
        assert get_probe_timeout("local_storage") == 2
        assert get_probe_timeout("something_else") == 5

    @pytest.mark.asyncio
    async def test_with_timeout_returns_value(self):
        async def quick():
            return "ok"

        assert await with_timeout(quick(), 1, "backend") == "ok"

    @pytest.mark.asyncio
    async def test_with_timeout_raises_probe_timeout(self):
        with pytest.raises(ProbeTimeoutError) as exc:
            await with_timeout(asyncio.sleep(1), 0.01, "backend")
        assert exc.value.probe_name == "backend"

    @pytest.mark.asyncio
    async def test_cancellable_sleep_without_event(self):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        assert await cancellable_sleep(2.0, None, fake_sleep) is False
        assert slept == [2.0]

    @pytest.mark.asyncio
    async def test_cancellable_sleep_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        assert await cancellable_sleep(10, cancel) is True

    @pytest.mark.asyncio
    async def test_cancellable_sleep_elapses(self):
        assert await cancellable_sleep(0.01, asyncio.Event()) is False

    @pytest.mark.asyncio
    async def test_cancellable_sleep_uses_injected_sleep_with_event(self):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        cancel = asyncio.Event()
        started = asyncio.get_running_loop().time()
        assert await cancellable_sleep(30.0, cancel, fake_sleep) is False
        assert slept == [30.0]
        assert asyncio.get_running_loop().time() - started < 1.0

    @pytest.mark.asyncio
    async def test_cancellable_sleep_event_beats_injected_sleep(self):
        cancel = asyncio.Event()

        async def slow_sleep(seconds):
            cancel.set()
            await asyncio.Event().wait()

        assert await cancellable_sleep(30.0, cancel, slow_sleep) is True
