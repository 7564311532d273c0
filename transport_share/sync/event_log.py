"""Append-only SQLite event log with Lamport clocks.

Each device is the single writer of its own events. Events from other
devices arrive through ``merge`` during sync. Every resource keeps a head,
the canonical event chosen by the conflict resolver.
"""

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from itertools import islice
from pathlib import Path
from typing import Any

from ..exceptions import ConflictResolutionError, InvalidEventError
from .events import Event, EventKind, LogicalClock
from .resolver import ConflictSet, Resolution, resolve

logger = logging.getLogger(__name__)

EVENT_LOG_SCHEMA = """
-- Event log: append-only, seq is the local log position
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    device_id TEXT NOT NULL,
    clock INTEGER NOT NULL,
    kind TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    parent_id TEXT,
    payload BLOB,
    created_at TEXT NOT NULL,
    received_at TEXT NOT NULL,
    compacted INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_events_device ON events(device_id, clock);
CREATE INDEX IF NOT EXISTS idx_events_resource ON events(resource_id);

-- Highest clock recorded per writing device
CREATE TABLE IF NOT EXISTS device_clocks (
    device_id TEXT PRIMARY KEY,
    last_clock INTEGER NOT NULL
);

-- Canonical event per resource
CREATE TABLE IF NOT EXISTS resource_heads (
    resource_id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL
);
"""

# Longest parent chain followed when checking ancestry
MAX_ANCESTRY_DEPTH = 1000


@dataclass
class MergeResult:
    """Outcome of merging a batch of remote events."""

    added: int = 0
    duplicates: int = 0
    conflicts: list[Resolution] = field(default_factory=list)


class EventStream:
    """Lazy, finite, restartable view of the log after a cursor.

    The upper bound is fixed when the stream is created, so events appended
    while iterating are not included. Iterating again starts over from the
    same cursor.
    """

    def __init__(self, log: "EventLog", after_seq: int, upper_seq: int):
        self._log = log
        self._after_seq = after_seq
        self._upper_seq = upper_seq

    def __iter__(self) -> Iterator[Event]:
        after = self._after_seq
        while after < self._upper_seq:
            rows = self._log._page(after, self._upper_seq)
            if not rows:
                return
            for row in rows:
                yield self._log._row_to_event(row)
            after = rows[-1]["seq"]

    def take(self, limit: int) -> list[Event]:
        """Return at most ``limit`` events from the start of the stream."""
        return list(islice(iter(self), limit))


class EventLog:
    """Append-only transport event log for one device."""

    def __init__(self, db_path: str | Path, device_id: str, page_size: int = 500):
        """Initialize the event log.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            device_id: Identifier of the local (writing) device.
            page_size: Rows fetched per query while streaming.
        """
        self.db_path = Path(db_path).expanduser()
        self.device_id = device_id
        self.page_size = page_size
        self._conn: sqlite3.Connection | None = None
        self._clock = LogicalClock(device_id)
        self._write_lock = threading.RLock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        in_memory = str(self.db_path) == ":memory:"
        if not in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if not in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.executescript(EVENT_LOG_SCHEMA)
        self._conn.commit()

        row = self._conn.execute("SELECT MAX(last_clock) FROM device_clocks").fetchone()
        if row[0] is not None:
            self._clock.observe(row[0])

        logger.info(
            f"EventLog connected to {self.db_path}, "
            f"device={self.device_id}, clock={self._clock.value}"
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @property
    def clock(self) -> LogicalClock:
        return self._clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        kind: EventKind | str,
        resource_id: str,
        payload: bytes = b"",
    ) -> Event:
        """Create a local event on top of the resource's current head and append it."""
        with self._write_lock:
            head = self.head(resource_id)
            event = Event.new(
                device_id=self.device_id,
                clock=self._clock.tick(),
                kind=kind,
                resource_id=resource_id,
                payload=payload,
                parent_id=head.id if head else None,
            )
            self.append(event)
        return event

    def append(self, event: Event) -> str:
        """Append a locally written event.

        The write is committed before returning.

        Returns:
            The event id.

        Raises:
            InvalidEventError: If the event is malformed, written by another
                device, or its clock does not advance past the device's last
                recorded clock.
        """
        _validate(event)
        if event.device_id != self.device_id:
            raise InvalidEventError(
                f"Event {event.id} written by {event.device_id} cannot be appended "
                f"on {self.device_id}; use merge() for remote events"
            )

        conn = self._ensure_connected()
        with self._write_lock:
            last_clock = self.last_clock(event.device_id)
            if event.clock <= last_clock:
                raise InvalidEventError(
                    f"Clock {event.clock} of event {event.id} does not advance past "
                    f"{last_clock} for device {event.device_id}"
                )
            if self.contains(event.id):
                raise InvalidEventError(f"Duplicate event id {event.id}")

            try:
                self._insert(conn, event)
                self._advance_head(conn, event)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        self._clock.observe(event.clock)
        logger.debug(f"Appended event {event.id} clock={event.clock}")
        return event.id

    def merge(self, remote_events: Iterable[Event]) -> MergeResult:
        """Merge events received from a peer.

        The batch is applied atomically. Events already present (by id) are
        skipped, so merging is idempotent.

        Raises:
            InvalidEventError: If an event is malformed, or claims to be from
                this device without being known here.
            ConflictResolutionError: If the resolver fails (never expected).
        """
        remote_events = list(remote_events)
        result = MergeResult()
        if not remote_events:
            return result

        conn = self._ensure_connected()
        with self._write_lock:
            try:
                for event in remote_events:
                    _validate(event)
                    if self.contains(event.id):
                        result.duplicates += 1
                        continue
                    if event.device_id == self.device_id:
                        raise InvalidEventError(
                            f"Peer sent unknown event {event.id} attributed "
                            f"to local device {self.device_id}"
                        )

                    self._insert(conn, event)
                    self._clock.observe(event.clock)
                    resolution = self._advance_head(conn, event)
                    if resolution is not None:
                        result.conflicts.append(resolution)
                    result.added += 1
                conn.commit()
            except ConflictResolutionError:
                conn.rollback()
                logger.critical("Conflict resolution failed during merge", exc_info=True)
                raise
            except Exception:
                conn.rollback()
                raise

        if result.added:
            logger.info(
                f"Merged {result.added} new events "
                f"({result.duplicates} duplicates, {len(result.conflicts)} conflicts)"
            )
        return result

    def _insert(self, conn: sqlite3.Connection, event: Event) -> None:
        conn.execute(
            """
            INSERT INTO events (
                id, device_id, clock, kind, resource_id, parent_id,
                payload, created_at, received_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.device_id,
                event.clock,
                event.kind.value,
                event.resource_id,
                event.parent_id,
                event.payload,
                event.created_at.isoformat(),
                datetime.now().isoformat(),
            ),
        )
        conn.execute(
            """
            INSERT INTO device_clocks (device_id, last_clock) VALUES (?, ?)
            ON CONFLICT(device_id) DO UPDATE
            SET last_clock = MAX(last_clock, excluded.last_clock)
            """,
            (event.device_id, event.clock),
        )

    def _advance_head(
        self, conn: sqlite3.Connection, event: Event
    ) -> Resolution | None:
        """Move the resource head and report a conflict if the event was concurrent."""
        head = self.head(event.resource_id)
        if head is None:
            self._set_head(conn, event)
            return None

        concurrent = event.parent_id != head.id and not self._is_ancestor(
            event.id, head
        )
        winner = resolve(ConflictSet.of(head, event))
        if winner.id != head.id:
            self._set_head(conn, winner)

        if not concurrent:
            return None

        loser = event if winner.id == head.id else head
        logger.info(
            f"Conflict on {event.resource_id}: {winner.id} "
            f"({winner.device_id}@{winner.clock}) wins over "
            f"{loser.id} ({loser.device_id}@{loser.clock})"
        )
        return Resolution(
            resource_id=event.resource_id, winner=winner, losers=(loser,)
        )

    def _set_head(self, conn: sqlite3.Connection, event: Event) -> None:
        conn.execute(
            """
            INSERT INTO resource_heads (resource_id, event_id) VALUES (?, ?)
            ON CONFLICT(resource_id) DO UPDATE SET event_id = excluded.event_id
            """,
            (event.resource_id, event.id),
        )

    def _is_ancestor(self, event_id: str, descendant: Event) -> bool:
        """Check whether ``event_id`` is on ``descendant``'s parent chain."""
        conn = self._ensure_connected()
        current = descendant.parent_id
        for _ in range(MAX_ANCESTRY_DEPTH):
            if current is None:
                return False
            if current == event_id:
                return True
            row = conn.execute(
                "SELECT parent_id FROM events WHERE id = ?", (current,)
            ).fetchone()
            if row is None:
                return False
            current = row["parent_id"]
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def since(self, cursor: str | None = None) -> EventStream:
        """Stream events appended after ``cursor``, in log order.

        Args:
            cursor: Id of the last event already seen, or None for the
                start of the log.

        Raises:
            InvalidEventError: If the cursor is not an event in this log.
        """
        conn = self._ensure_connected()
        after_seq = self.seq_of(cursor)
        row = conn.execute("SELECT MAX(seq) FROM events").fetchone()
        upper_seq = row[0] if row[0] is not None else 0
        return EventStream(self, after_seq, upper_seq)

    def _page(self, after_seq: int, upper_seq: int) -> list[sqlite3.Row]:
        conn = self._ensure_connected()
        return conn.execute(
            """
            SELECT * FROM events
            WHERE seq > ? AND seq <= ? AND compacted = 0
            ORDER BY seq ASC
            LIMIT ?
            """,
            (after_seq, upper_seq, self.page_size),
        ).fetchall()

    def seq_of(self, cursor: str | None) -> int:
        """Return the log position of a cursor (0 for the zero cursor)."""
        if cursor is None:
            return 0
        conn = self._ensure_connected()
        row = conn.execute("SELECT seq FROM events WHERE id = ?", (cursor,)).fetchone()
        if row is None:
            raise InvalidEventError(f"Unknown cursor {cursor}")
        return row["seq"]

    def contains(self, event_id: str) -> bool:
        conn = self._ensure_connected()
        row = conn.execute("SELECT 1 FROM events WHERE id = ?", (event_id,)).fetchone()
        return row is not None

    def get(self, event_id: str) -> Event | None:
        """Get an event by id. Compacted events come back with an empty payload."""
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def head(self, resource_id: str) -> Event | None:
        """Get the canonical event of a resource."""
        conn = self._ensure_connected()
        row = conn.execute(
            """
            SELECT e.* FROM resource_heads h
            JOIN events e ON e.id = h.event_id
            WHERE h.resource_id = ?
            """,
            (resource_id,),
        ).fetchone()
        return self._row_to_event(row) if row else None

    def heads(self) -> dict[str, Event]:
        """Get the canonical event of every resource."""
        conn = self._ensure_connected()
        rows = conn.execute(
            """
            SELECT e.* FROM resource_heads h
            JOIN events e ON e.id = h.event_id
            ORDER BY h.resource_id
            """
        ).fetchall()
        return {row["resource_id"]: self._row_to_event(row) for row in rows}

    def last_clock(self, device_id: str) -> int:
        """Highest clock recorded for a device, 0 if none."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT last_clock FROM device_clocks WHERE device_id = ?", (device_id,)
        ).fetchone()
        return row["last_clock"] if row else 0

    def latest_clock(self) -> int:
        """Highest clock seen from any device, 0 for an empty log."""
        conn = self._ensure_connected()
        row = conn.execute("SELECT MAX(last_clock) FROM device_clocks").fetchone()
        return row[0] if row[0] is not None else 0

    def count(self) -> int:
        """Number of events that still carry their payload."""
        conn = self._ensure_connected()
        return conn.execute(
            "SELECT COUNT(*) FROM events WHERE compacted = 0"
        ).fetchone()[0]

    def event_ids(self) -> set[str]:
        """Ids of every event this log has seen, compacted or not."""
        conn = self._ensure_connected()
        return {row[0] for row in conn.execute("SELECT id FROM events")}

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            device_id=row["device_id"],
            clock=row["clock"],
            kind=EventKind(row["kind"]),
            resource_id=row["resource_id"],
            payload=bytes(row["payload"]) if row["payload"] is not None else b"",
            parent_id=row["parent_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def compact(self, acked_cursors: list[str | None]) -> int:
        """Drop payloads of events every known peer has acknowledged.

        Compacted events keep their id, clock and position so cursors and
        de-duplication still work. Current resource heads are kept intact.

        Args:
            acked_cursors: The acknowledged cursor of each known peer.

        Returns:
            Number of events compacted.
        """
        if not acked_cursors or any(c is None for c in acked_cursors):
            return 0

        conn = self._ensure_connected()
        with self._write_lock:
            bound = min(self.seq_of(c) for c in acked_cursors)
            cursor = conn.execute(
                """
                UPDATE events
                SET payload = NULL, compacted = 1
                WHERE seq <= ? AND compacted = 0
                  AND id NOT IN (SELECT event_id FROM resource_heads)
                """,
                (bound,),
            )
            conn.commit()

        compacted = cursor.rowcount
        if compacted > 0:
            logger.info(f"Compacted {compacted} events acknowledged by all peers")
        return compacted

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "device_id": self.device_id,
            "clock": self._clock.value,
        }

        stats["total_events"] = conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        stats["live_events"] = self.count()
        stats["compacted_events"] = stats["total_events"] - stats["live_events"]
        stats["resources"] = conn.execute(
            "SELECT COUNT(*) FROM resource_heads"
        ).fetchone()[0]

        cursor = conn.execute(
            "SELECT kind, COUNT(*) FROM events WHERE compacted = 0 GROUP BY kind"
        )
        stats["events_by_kind"] = {row[0]: row[1] for row in cursor}

        cursor = conn.execute("SELECT device_id, last_clock FROM device_clocks")
        stats["device_clocks"] = {row[0]: row[1] for row in cursor}

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats


def _validate(event: Event) -> None:
    if not event.id:
        raise InvalidEventError("Event has no id")
    if not event.device_id:
        raise InvalidEventError(f"Event {event.id} has no device id")
    if not event.resource_id:
        raise InvalidEventError(f"Event {event.id} has no resource id")
    if event.clock < 1:
        raise InvalidEventError(f"Event {event.id} has invalid clock {event.clock}")
    if not isinstance(event.kind, EventKind):
        raise InvalidEventError(f"Event {event.id} has invalid kind {event.kind!r}")
