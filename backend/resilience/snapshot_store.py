"""
Pulseboard Resilience - Snapshot History

SQLite-backed history of monitoring snapshots for post-incident debugging.
Snapshots larger than the size cap are rejected before they reach the
database. Nothing here is ever used to restore limiter or circuit state.

Usage:
    store = SnapshotStore()
    store.save(monitor.get_snapshot())
    latest = store.latest()
"""
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import SNAPSHOT_DB_PATH, SNAPSHOT_MAX_BYTES
from resilience.errors import SnapshotTooLarge
from resilience.models import MonitoringSnapshot

logger = logging.getLogger("pulseboard.resilience.snapshot_store")

_MAX_ROWS = 50


class SnapshotStore:
    """Bounded SQLite history of serialized MonitoringSnapshots."""

    def __init__(self, db_path: Path = SNAPSHOT_DB_PATH, max_bytes: int = SNAPSHOT_MAX_BYTES,
                 max_rows: int = _MAX_ROWS):
        self._db_path = Path(db_path)
        self._max_bytes = max_bytes
        self._max_rows = max_rows
        self._init_db()

    def _init_db(self):
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path))
        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                saved_at TEXT NOT NULL,
                healthy INTEGER NOT NULL DEFAULT 0,
                total INTEGER NOT NULL DEFAULT 0,
                circuit_state TEXT NOT NULL DEFAULT 'CLOSED',
                size_bytes INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL
            )
        """)
        conn.commit()
        conn.close()
        logger.debug(f"Snapshot store initialized: {self._db_path}")

    def check_size(self, snapshot: MonitoringSnapshot) -> str:
        """Serialize `snapshot`, raising SnapshotTooLarge above the cap."""
        payload = snapshot.serialize()
        size = len(payload.encode("utf-8"))
        if size > self._max_bytes:
            raise SnapshotTooLarge(size, self._max_bytes)
        return payload

    def save(self, snapshot: MonitoringSnapshot) -> int:
        """Persist a snapshot and prune old rows. Returns the payload size in bytes."""
        payload = self.check_size(snapshot)
        size = len(payload.encode("utf-8"))

        conn = sqlite3.connect(str(self._db_path))
        try:
            conn.execute(
                """INSERT INTO snapshots
                   (saved_at, healthy, total, circuit_state, size_bytes, payload)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (datetime.now().isoformat(), snapshot.healthy_count,
                 len(snapshot.health_checks), snapshot.circuit.state, size, payload)
            )
            conn.execute(
                """DELETE FROM snapshots WHERE id NOT IN
                   (SELECT id FROM snapshots ORDER BY id DESC LIMIT ?)""",
                (self._max_rows,)
            )
            conn.commit()
        finally:
            conn.close()
        return size

    def latest(self) -> Optional[dict]:
        rows = self.recent(1)
        return rows[0] if rows else None

    def recent(self, limit: int = 10) -> list[dict]:
        """Most recent snapshots, newest first, with the payload decoded."""
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(
                "SELECT * FROM snapshots ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        finally:
            conn.close()

        result = []
        for row in rows:
            entry = dict(row)
            entry["payload"] = json.loads(entry["payload"])
            result.append(entry)
        return result

    def count(self) -> int:
        conn = sqlite3.connect(str(self._db_path))
        try:
            return conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]
        finally:
            conn.close()
