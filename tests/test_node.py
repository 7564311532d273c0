"""Tests for the device runtime and CLI."""

import asyncio
import json
import sys

import pytest

from transport_share.__main__ import main
from transport_share.config import (
    Config,
    ConnectivityConfig,
    DeviceConfig,
    DiscoveryConfig,
    PeerConfig,
    StorageConfig,
)
from transport_share.discovery import DiscoveredPeer
from transport_share.exceptions import SyncFailed, TransientTransportError
from transport_share.node import Node
from transport_share.sync import EventKind, SyncState


@pytest.fixture
def config(tmp_path):
    return Config(
        device=DeviceConfig(id="device-a", name="bus-12"),
        storage=StorageConfig(
            db_path=str(tmp_path / "events.db"),
            cursor_db_path=str(tmp_path / "cursors.db"),
        ),
        connectivity=ConnectivityConfig(check_interval_seconds=60),
        peers=[PeerConfig(peer_id="depot", url="http://10.0.0.2:8080")],
        discovery=DiscoveryConfig(enabled=False),
    )


@pytest.fixture
def node(config):
    node = Node(config)
    yield node
    node.cursors.close()
    node.log.close()


def discovered(device_id, url="http://10.0.0.9:8080"):
    return DiscoveredPeer(device_id=device_id, name=device_id, url=url, port=8080)


class TestNode:
    """Tests for Node wiring."""

    def test_configured_peers(self, node):
        assert node.coordinator.peers == ["depot"]
        assert node.monitor.probe_host == "10.0.0.2"
        assert node.monitor.probe_port == 8080

    def test_discovered_peer_added_and_removed(self, node):
        node._on_peer_found(discovered("bus-7"))
        assert node.coordinator.peers == ["bus-7", "depot"]

        node._on_peer_lost(discovered("bus-7"))
        assert node.coordinator.peers == ["depot"]

    def test_discovery_does_not_replace_configured_peer(self, node):
        node._on_peer_found(discovered("depot"))
        node._on_peer_lost(discovered("depot"))

        status = node.coordinator.get_sync_status()
        assert status["peers"]["depot"]["transport"] == "local:http://10.0.0.2:8080"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, config):
        """Test the background components start and shut down cleanly."""
        config.peers = []
        config.sync.interval_seconds = 60
        node = Node(config)

        await node.start()
        assert node.monitor.running
        await node.stop()

        assert not node.monitor.running

    @pytest.mark.asyncio
    async def test_unresponsive_peer_is_retried(self, config):
        """Test that a peer which accepts but never answers is retried."""
        connections = []

        async def accept_and_hang(reader, writer):
            connections.append(writer)

        server = await asyncio.start_server(accept_and_hang, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        config.peers = [PeerConfig(peer_id="depot", url=f"http://127.0.0.1:{port}")]
        config.sync.timeout_seconds = 2.0
        config.sync.request_timeout_seconds = 0.1
        config.sync.retry_base_seconds = 0.01
        node = Node(config)

        try:
            with pytest.raises(SyncFailed) as exc_info:
                await node.coordinator.sync_with("depot")
        finally:
            for writer in connections:
                writer.close()
            server.close()
            await server.wait_closed()
            node.cursors.close()
            node.log.close()

        assert exc_info.value.attempts == 5
        assert isinstance(exc_info.value.last_error, TransientTransportError)

    @pytest.mark.asyncio
    async def test_departed_peer_no_longer_blocks_compaction(self, config):
        """Test that a peer removed from the network is unregistered."""
        config.discovery = DiscoveryConfig(enabled=True, announce=False)
        node = Node(config)
        try:
            node.log.create(EventKind.LOCATION, "vehicle:1", b"fix-1")
            latest = node.log.create(EventKind.LOCATION, "vehicle:1", b"fix-2")
            node.cursors.save(SyncState(peer_id="depot", last_acked_event_id=latest.id))

            await node.discovery.browser.record("bus-7", discovered("bus-7"))
            assert node.coordinator.peers == ["bus-7", "depot"]
            assert node.coordinator.compact() == 0

            await node.discovery.browser._remove_service("bus-7")

            assert node.coordinator.peers == ["depot"]
            assert node.coordinator.compact() == 1
        finally:
            node.cursors.close()
            node.log.close()


class TestCli:
    """Tests for the command line interface."""

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "device:\n"
            "  id: device-a\n"
            "storage:\n"
            f"  db_path: {tmp_path / 'events.db'}\n"
            f"  cursor_db_path: {tmp_path / 'cursors.db'}\n"
            "discovery:\n"
            "  enabled: false\n"
        )
        return path

    def run_cli(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["transport-share", *argv])
        return main()

    def test_append_then_log(self, monkeypatch, capsys, config_file):
        code = self.run_cli(
            monkeypatch, "-c", str(config_file), "append", "trip_status", "trip:1",
            "-p", "boarding",
        )
        assert code == 0
        created = json.loads(capsys.readouterr().out)
        assert created["resource_id"] == "trip:1"

        code = self.run_cli(monkeypatch, "-c", str(config_file), "log", "--json")
        assert code == 0
        events = json.loads(capsys.readouterr().out)
        assert [e["id"] for e in events] == [created["id"]]
        assert events[0]["kind"] == EventKind.TRIP_STATUS.value

    def test_log_unknown_cursor(self, monkeypatch, config_file):
        code = self.run_cli(
            monkeypatch, "-c", str(config_file), "log", "--since", "missing"
        )
        assert code == 1

    def test_sync_without_peers(self, monkeypatch, capsys, config_file):
        code = self.run_cli(monkeypatch, "-c", str(config_file), "sync")

        assert code == 1
        assert "No peers configured" in capsys.readouterr().out

    def test_invalid_config(self, monkeypatch, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("sync:\n  batch_size: 0\n")

        assert self.run_cli(monkeypatch, "-c", str(path), "status") == 2
