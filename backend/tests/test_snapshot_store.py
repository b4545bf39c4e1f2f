"""
Unit tests for SnapshotStore: SQLite persistence, pruning and the size cap.
"""
import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.errors import SnapshotTooLarge
from resilience.models import (
    CircuitStatus,
    HealthCheckResult,
    HealthStatus,
    MonitoringSnapshot,
)
from resilience.snapshot_store import SnapshotStore


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(db_path=tmp_path / "monitoring.db", max_rows=3)


def _snapshot(healthy: bool = True, error: str = None) -> MonitoringSnapshot:
    status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
    return MonitoringSnapshot(
        health_checks=(
            HealthCheckResult("backend", status, 12.5, error, critical=True),
            HealthCheckResult("local_storage", HealthStatus.HEALTHY, 0.4),
        ),
        is_online=healthy,
        circuit=CircuitStatus(state="CLOSED" if healthy else "OPEN"),
    )


class TestSave:
    def test_save_and_read_back(self, store):
        size = store.save(_snapshot())
        assert size > 0

        latest = store.latest()
        assert latest["healthy"] == 2
        assert latest["total"] == 2
        assert latest["circuit_state"] == "CLOSED"
        assert latest["size_bytes"] == size
        assert latest["payload"]["health_checks"][0]["service_name"] == "backend"
        assert latest["payload"]["health_checks"][0]["status"] == "healthy"

    def test_recent_is_newest_first(self, store):
        store.save(_snapshot(healthy=True))
        store.save(_snapshot(healthy=False, error="down"))
        rows = store.recent(2)
        assert [r["circuit_state"] for r in rows] == ["OPEN", "CLOSED"]

    def test_prunes_to_max_rows(self, store):
        for _ in range(5):
            store.save(_snapshot())
        assert store.count() == 3

    def test_empty_store(self, store):
        assert store.latest() is None
        assert store.count() == 0


class TestSizeCap:
    def test_oversized_snapshot_rejected(self, tmp_path):
        store = SnapshotStore(db_path=tmp_path / "monitoring.db", max_bytes=100)
        with pytest.raises(SnapshotTooLarge) as exc:
            store.save(_snapshot(healthy=False, error="x" * 500))
        assert exc.value.limit_bytes == 100
        assert exc.value.size_bytes > 100
        assert store.count() == 0

    def test_default_cap_is_50kb(self, tmp_path):
        store = SnapshotStore(db_path=tmp_path / "monitoring.db")
        assert store.check_size(_snapshot())
        with pytest.raises(SnapshotTooLarge):
            store.check_size(_snapshot(healthy=False, error="x" * (50 * 1024)))
