"""Tests for the per-peer cursor store."""

import pytest

from transport_share.sync import CursorStore, SyncState


@pytest.fixture
def cursor_store():
    store = CursorStore(":memory:")
    store.connect()
    yield store
    store.close()


class TestCursorStore:
    """Tests for CursorStore."""

    def test_unknown_peer(self, cursor_store):
        """Test that a peer without history has no state."""
        assert cursor_store.get("device-b") is None

        state = cursor_store.get_or_create("device-b")
        assert state.peer_id == "device-b"
        assert state.last_acked_event_id is None
        assert state.last_received_event_id is None

    def test_save_and_get(self, cursor_store):
        """Test persisting cursors."""
        state = SyncState(
            peer_id="device-b",
            last_acked_event_id="evt-10",
            last_received_event_id="evt-7",
        )
        cursor_store.save(state)

        loaded = cursor_store.get("device-b")
        assert loaded.last_acked_event_id == "evt-10"
        assert loaded.last_received_event_id == "evt-7"
        assert loaded.updated_at is not None

    def test_save_overwrites(self, cursor_store):
        """Test that saving again advances the cursor."""
        state = cursor_store.get_or_create("device-b")
        state.last_acked_event_id = "evt-1"
        cursor_store.save(state)
        state.last_acked_event_id = "evt-2"
        cursor_store.save(state)

        assert cursor_store.get("device-b").last_acked_event_id == "evt-2"
        assert len(cursor_store.all()) == 1

    def test_delete(self, cursor_store):
        """Test forgetting a peer."""
        cursor_store.save(SyncState(peer_id="device-b"))

        assert cursor_store.delete("device-b") is True
        assert cursor_store.delete("device-b") is False
        assert cursor_store.get("device-b") is None

    def test_all_sorted(self, cursor_store):
        """Test listing every peer."""
        cursor_store.save(SyncState(peer_id="device-c"))
        cursor_store.save(SyncState(peer_id="device-b"))

        assert [s.peer_id for s in cursor_store.all()] == ["device-b", "device-c"]

    def test_survives_reopen(self, tmp_path):
        """Test that cursors are durable across restarts."""
        path = tmp_path / "cursors.db"
        store = CursorStore(path)
        store.connect()
        store.save(SyncState(peer_id="device-b", last_received_event_id="evt-3"))
        store.close()

        reopened = CursorStore(path)
        reopened.connect()
        assert reopened.get("device-b").last_received_event_id == "evt-3"
        reopened.close()
