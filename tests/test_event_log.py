"""Tests for the append-only event log."""

import pytest
from datetime import datetime

from transport_share.exceptions import InvalidEventError
from transport_share.sync import Event, EventKind, EventLog


@pytest.fixture
def event_log():
    """Create an in-memory event log."""
    log = EventLog(":memory:", "device-a")
    log.connect()
    yield log
    log.close()


def remote_event(device_id, clock, resource_id="trip:1", parent_id=None, event_id=None):
    """Build an event as if written on another device."""
    event = Event.new(
        device_id=device_id,
        clock=clock,
        kind=EventKind.TRIP_STATUS,
        resource_id=resource_id,
        payload=f"{device_id}@{clock}".encode(),
        parent_id=parent_id,
    )
    if event_id:
        event = Event(
            id=event_id,
            device_id=event.device_id,
            clock=event.clock,
            kind=event.kind,
            resource_id=event.resource_id,
            payload=event.payload,
            parent_id=event.parent_id,
            created_at=event.created_at,
        )
    return event


class TestEvent:
    """Tests for the Event dataclass."""

    def test_event_is_immutable(self):
        """Test that events cannot be modified after creation."""
        event = remote_event("device-b", 1)

        with pytest.raises(AttributeError):
            event.clock = 5

    def test_event_from_dict(self):
        """Test deserializing an event from the wire format."""
        data = {
            "id": "xyz789",
            "device_id": "device-b",
            "clock": 10,
            "kind": "location",
            "resource_id": "vehicle:7",
            "payload": "eyJsYXQiOiA1Mi4zfQ==",
            "parent_id": None,
            "created_at": "2026-02-03T10:00:00",
        }

        event = Event.from_dict(data)

        assert event.id == "xyz789"
        assert event.clock == 10
        assert event.kind == EventKind.LOCATION
        assert event.payload == b'{"lat": 52.3}'
        assert event.created_at == datetime(2026, 2, 3, 10, 0, 0)

    def test_event_to_dict_encodes_payload(self):
        """Test that binary payloads survive serialization."""
        event = Event.new("device-b", 1, "eta", "trip:1", payload=b"\x00\xffeta")

        data = event.to_dict()

        assert data["kind"] == "eta"
        assert Event.from_dict(data).payload == b"\x00\xffeta"


class TestEventLogSchema:
    """Tests for schema initialization and clock restore."""

    def test_connect_creates_tables(self):
        """Test that connect() creates the log tables."""
        log = EventLog(":memory:", "device-a")
        log.connect()

        tables = log._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = {t[0] for t in tables}

        assert {"events", "device_clocks", "resource_heads"} <= table_names
        log.close()

    def test_clock_restored_from_disk(self, tmp_path):
        """Test the Lamport clock survives a restart."""
        db_path = tmp_path / "events.db"
        log = EventLog(db_path, "device-a")
        log.connect()
        log.create(EventKind.LOCATION, "vehicle:1", b"1")
        log.create(EventKind.LOCATION, "vehicle:1", b"2")
        log.merge([remote_event("device-b", 9)])
        log.close()

        reopened = EventLog(db_path, "device-a")
        reopened.connect()
        event = reopened.create(EventKind.LOCATION, "vehicle:1", b"3")

        assert event.clock == 10
        assert reopened.count() == 4
        reopened.close()


class TestEventLogAppend:
    """Tests for appending local events."""

    def test_create_assigns_increasing_clocks(self, event_log):
        """Test that each local event gets the next clock value."""
        e1 = event_log.create(EventKind.LOCATION, "vehicle:1", b"a")
        e2 = event_log.create(EventKind.LOCATION, "vehicle:1", b"b")
        e3 = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"c")

        assert [e1.clock, e2.clock, e3.clock] == [1, 2, 3]
        assert e1.device_id == "device-a"

    def test_create_links_parent_to_head(self, event_log):
        """Test that new events point at the resource head they saw."""
        e1 = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"started")
        e2 = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"ended")

        assert e1.parent_id is None
        assert e2.parent_id == e1.id
        assert event_log.head("trip:1").id == e2.id

    def test_append_returns_event_id(self, event_log):
        """Test appending a prebuilt event."""
        event = Event.new("device-a", 1, EventKind.ROUTE, "route:9", b"A-B")

        assert event_log.append(event) == event.id
        assert event_log.get(event.id) == event

    def test_append_rejects_stale_clock(self, event_log):
        """Test that clocks must advance past the device's last clock."""
        event_log.append(Event.new("device-a", 5, EventKind.ETA, "trip:1"))

        with pytest.raises(InvalidEventError):
            event_log.append(Event.new("device-a", 5, EventKind.ETA, "trip:1"))
        with pytest.raises(InvalidEventError):
            event_log.append(Event.new("device-a", 3, EventKind.ETA, "trip:1"))

        assert event_log.count() == 1

    def test_append_rejects_foreign_device(self, event_log):
        """Test that only the local device may append."""
        with pytest.raises(InvalidEventError):
            event_log.append(remote_event("device-b", 1))

    def test_append_rejects_malformed_event(self, event_log):
        """Test validation of required fields."""
        with pytest.raises(InvalidEventError):
            event_log.append(Event.new("device-a", 0, EventKind.ETA, "trip:1"))
        with pytest.raises(InvalidEventError):
            event_log.append(Event.new("device-a", 1, EventKind.ETA, ""))

    def test_create_after_merge_advances_past_remote_clock(self, event_log):
        """Test Lamport receive rule."""
        event_log.merge([remote_event("device-b", 41)])

        event = event_log.create(EventKind.MESSAGE, "chat:1", b"hi")

        assert event.clock == 42


class TestEventLogSince:
    """Tests for streaming events after a cursor."""

    def test_since_zero_cursor_returns_append_order(self, event_log):
        """Test that all local appends come back in order."""
        created = [
            event_log.create(EventKind.LOCATION, f"vehicle:{i % 3}", str(i).encode())
            for i in range(10)
        ]

        events = list(event_log.since(None))

        assert [e.id for e in events] == [e.id for e in created]

    def test_since_cursor_excludes_cursor_event(self, event_log):
        """Test that streaming starts after the cursor."""
        e1 = event_log.create(EventKind.LOCATION, "vehicle:1", b"1")
        e2 = event_log.create(EventKind.LOCATION, "vehicle:1", b"2")
        e3 = event_log.create(EventKind.LOCATION, "vehicle:1", b"3")

        assert [e.id for e in event_log.since(e1.id)] == [e2.id, e3.id]
        assert list(event_log.since(e3.id)) == []

    def test_since_is_restartable(self, event_log):
        """Test that a stream can be iterated more than once."""
        for i in range(3):
            event_log.create(EventKind.LOCATION, "vehicle:1", str(i).encode())

        stream = event_log.since(None)

        assert [e.id for e in stream] == [e.id for e in stream]

    def test_since_is_a_snapshot(self, event_log):
        """Test that events appended after the call are not included."""
        event_log.create(EventKind.LOCATION, "vehicle:1", b"1")
        stream = event_log.since(None)

        event_log.create(EventKind.LOCATION, "vehicle:1", b"2")

        assert len(list(stream)) == 1
        assert len(list(event_log.since(None))) == 2

    def test_since_pages_lazily(self):
        """Test streaming across several pages."""
        log = EventLog(":memory:", "device-a", page_size=2)
        log.connect()
        for i in range(5):
            log.create(EventKind.LOCATION, "vehicle:1", str(i).encode())

        stream = iter(log.since(None))
        first = next(stream)

        assert first.clock == 1
        assert [e.clock for e in stream] == [2, 3, 4, 5]
        log.close()

    def test_since_take_limits(self, event_log):
        """Test taking a bounded prefix."""
        for i in range(5):
            event_log.create(EventKind.LOCATION, "vehicle:1", str(i).encode())

        assert len(event_log.since(None).take(3)) == 3

    def test_since_unknown_cursor(self, event_log):
        """Test that an unknown cursor is rejected."""
        with pytest.raises(InvalidEventError):
            event_log.since("no-such-event")


class TestEventLogMerge:
    """Tests for merging remote events."""

    def test_merge_new_events(self, event_log):
        """Test merging events from another device."""
        result = event_log.merge(
            [remote_event("device-b", 1), remote_event("device-b", 2, "trip:2")]
        )

        assert result.added == 2
        assert result.duplicates == 0
        assert event_log.last_clock("device-b") == 2
        assert event_log.clock.value >= 2

    def test_merge_is_idempotent(self, event_log):
        """Test that duplicate events are skipped."""
        events = [remote_event("device-b", 1)]

        assert event_log.merge(events).added == 1
        second = event_log.merge(events)

        assert second.added == 0
        assert second.duplicates == 1
        assert event_log.count() == 1

    def test_merge_rejects_unknown_local_events(self, event_log):
        """Test that peers cannot inject events for this device."""
        with pytest.raises(InvalidEventError):
            event_log.merge([remote_event("device-a", 7)])

    def test_merge_batch_is_atomic(self, event_log):
        """Test that a rejected batch leaves no partial state."""
        good = remote_event("device-b", 1)
        bad = remote_event("device-a", 2)

        with pytest.raises(InvalidEventError):
            event_log.merge([good, bad])

        assert not event_log.contains(good.id)

    def test_concurrent_writes_resolved_by_device_id(self, event_log):
        """Test the clock tie-break between two devices."""
        local = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"local")
        remote = remote_event("device-b", 1, "trip:1")

        result = event_log.merge([remote])

        assert len(result.conflicts) == 1
        assert result.conflicts[0].winner.id == local.id
        assert event_log.head("trip:1").id == local.id

    def test_higher_clock_wins_conflict(self, event_log):
        """Test that the later logical write wins."""
        event_log.create(EventKind.TRIP_STATUS, "trip:1", b"local")
        remote = remote_event("device-b", 5, "trip:1")

        result = event_log.merge([remote])

        assert result.conflicts[0].winner.id == remote.id
        assert event_log.head("trip:1").id == remote.id

    def test_causal_successor_is_not_a_conflict(self, event_log):
        """Test that an event written on top of the head fast-forwards."""
        local = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"started")
        remote = remote_event("device-b", 2, "trip:1", parent_id=local.id)

        result = event_log.merge([remote])

        assert result.conflicts == []
        assert event_log.head("trip:1").id == remote.id

    def test_superseded_ancestor_is_not_a_conflict(self, event_log):
        """Test that receiving an old ancestor after its successor is quiet."""
        first = remote_event("device-b", 1, "trip:1")
        second = remote_event("device-c", 2, "trip:1", parent_id=first.id)

        event_log.merge([second])
        result = event_log.merge([first])

        assert result.conflicts == []
        assert event_log.head("trip:1").id == second.id

    def test_heads_lists_every_resource(self, event_log):
        """Test listing canonical events."""
        event_log.create(EventKind.LOCATION, "vehicle:1", b"1")
        event_log.merge([remote_event("device-b", 1, "trip:9")])

        assert set(event_log.heads()) == {"vehicle:1", "trip:9"}


class TestEventLogCompaction:
    """Tests for compaction and stats."""

    def test_compact_requires_every_peer_ack(self, event_log):
        """Test nothing is compacted while a peer has acked nothing."""
        e1 = event_log.create(EventKind.LOCATION, "vehicle:1", b"1")

        assert event_log.compact([e1.id, None]) == 0
        assert event_log.compact([]) == 0

    def test_compact_strips_acked_events(self, event_log):
        """Test compaction up to the minimum acknowledged cursor."""
        e1 = event_log.create(EventKind.LOCATION, "vehicle:1", b"1")
        e2 = event_log.create(EventKind.LOCATION, "vehicle:1", b"2")
        e3 = event_log.create(EventKind.LOCATION, "vehicle:1", b"3")
        event_log.create(EventKind.LOCATION, "vehicle:2", b"4")

        compacted = event_log.compact([e3.id, e2.id])

        assert compacted == 2
        assert event_log.get(e1.id).payload == b""
        assert [e.clock for e in event_log.since(None)] == [3, 4]

    def test_compact_keeps_heads(self, event_log):
        """Test that the current head of a resource is never compacted."""
        head = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"only")

        assert event_log.compact([head.id]) == 0
        assert event_log.head("trip:1").payload == b"only"

    def test_compacted_events_still_dedupe_and_serve_as_cursor(self, event_log):
        """Test that compacted stubs keep ids and positions."""
        remote = remote_event("device-b", 1, "trip:1")
        event_log.merge([remote])
        newer = event_log.create(EventKind.TRIP_STATUS, "trip:1", b"newer")
        event_log.compact([newer.id])

        assert event_log.merge([remote]).duplicates == 1
        assert [e.id for e in event_log.since(remote.id)] == [newer.id]

    def test_get_stats(self, event_log):
        """Test log statistics."""
        event_log.create(EventKind.LOCATION, "vehicle:1", b"1")
        event_log.create(EventKind.TRIP_STATUS, "trip:1", b"2")
        event_log.create(EventKind.LOCATION, "vehicle:1", b"3")

        stats = event_log.get_stats()

        assert stats["device_id"] == "device-a"
        assert stats["live_events"] == 3
        assert stats["resources"] == 2
        assert stats["events_by_kind"] == {"location": 2, "trip_status": 1}
        assert stats["device_clocks"] == {"device-a": 3}
