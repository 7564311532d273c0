"""Key-value sidecar persisting per-peer sync cursors."""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from .events import SyncState

logger = logging.getLogger(__name__)

CURSOR_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

PEER_PREFIX = "peer:"


class CursorStore:
    """Small SQLite key-value store kept next to the event log."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CURSOR_SCHEMA)
        self._conn.commit()
        logger.debug(f"CursorStore connected to {self.db_path}")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, peer_id: str) -> SyncState | None:
        """Load the sync state of a peer, None before first contact."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM kv WHERE key = ?", (PEER_PREFIX + peer_id,)
        ).fetchone()
        if row is None:
            return None
        return SyncState.from_dict(json.loads(row["value"]))

    def get_or_create(self, peer_id: str) -> SyncState:
        return self.get(peer_id) or SyncState(peer_id=peer_id)

    def save(self, state: SyncState) -> None:
        """Persist a peer's sync state."""
        state.updated_at = datetime.now()
        conn = self._ensure_connected()
        with self._lock:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE
                SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (
                    PEER_PREFIX + state.peer_id,
                    json.dumps(state.to_dict()),
                    state.updated_at.isoformat(),
                ),
            )
            conn.commit()

    def delete(self, peer_id: str) -> bool:
        conn = self._ensure_connected()
        with self._lock:
            cursor = conn.execute(
                "DELETE FROM kv WHERE key = ?", (PEER_PREFIX + peer_id,)
            )
            conn.commit()
        return cursor.rowcount > 0

    def all(self) -> list[SyncState]:
        """Sync state of every peer ever contacted."""
        conn = self._ensure_connected()
        rows = conn.execute(
            "SELECT value FROM kv WHERE key LIKE ? ORDER BY key",
            (PEER_PREFIX + "%",),
        ).fetchall()
        return [SyncState.from_dict(json.loads(row["value"])) for row in rows]
