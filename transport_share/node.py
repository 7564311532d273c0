"""Device runtime wiring the event log, sync, connectivity and discovery."""

import asyncio
import logging

from .config import Config
from .discovery import DiscoveredPeer, DiscoveryManager
from .sync import (
    ConnectivityMonitor,
    CursorStore,
    EventLog,
    LocalNetworkTransport,
    SyncCoordinator,
)
from .sync.transport import build_transport

logger = logging.getLogger(__name__)


class Node:
    """One transport-share device.

    Components are created in ``__init__`` and started/stopped explicitly,
    so several nodes can live in one process.
    """

    def __init__(self, config: Config):
        self.config = config
        self._running = False
        self._stop_event = asyncio.Event()
        self._sync_loop_task: asyncio.Task | None = None
        self._discovered: set[str] = set()

        self.log = EventLog(config.storage.db_path, config.device.id)
        self.log.connect()
        self.cursors = CursorStore(config.storage.cursor_db_path)
        self.cursors.connect()

        self.coordinator = SyncCoordinator(
            log=self.log,
            cursors=self.cursors,
            batch_size=config.sync.batch_size,
            timeout=config.sync.timeout_seconds,
            max_attempts=config.sync.retry_max_attempts,
            backoff_base=config.sync.retry_base_seconds,
            backoff_cap=config.sync.retry_cap_seconds,
        )
        for peer in config.peers:
            self.coordinator.add_peer(
                peer.peer_id,
                build_transport(
                    kind=peer.kind,
                    peer_id=peer.peer_id,
                    device_id=config.device.id,
                    url=peer.url,
                    token=peer.token or config.relay.token,
                    relay_url=config.relay.url,
                    timeout=config.sync.request_timeout_seconds,
                ),
            )

        self.monitor: ConnectivityMonitor | None = None
        if config.connectivity.enabled:
            self.monitor = ConnectivityMonitor(
                coordinator=self.coordinator if config.sync.enabled else None,
                probe_host=config.connectivity.probe_host,
                probe_port=config.connectivity.probe_port,
                check_interval=config.connectivity.check_interval_seconds,
                probe_timeout=config.connectivity.probe_timeout_seconds,
            )
            if not config.connectivity.probe_host:
                probe_url = config.relay.url or next(
                    (p.url for p in config.peers if p.url), ""
                )
                if probe_url:
                    self.monitor.set_probe_from_url(probe_url)

        self.discovery: DiscoveryManager | None = None
        if config.discovery.enabled:
            self.discovery = DiscoveryManager(
                device_id=config.device.id,
                device_name=config.device.name,
                port=config.server.port,
                service_type=config.discovery.service_type,
                announce=config.discovery.announce,
                browse=config.discovery.browse,
                on_found=self._on_peer_found,
                on_lost=self._on_peer_lost,
            )

    def _on_peer_found(self, peer: DiscoveredPeer) -> None:
        configured = {p.peer_id for p in self.config.peers}
        if peer.device_id in configured:
            return
        self._discovered.add(peer.device_id)
        self.coordinator.add_peer(
            peer.device_id,
            LocalNetworkTransport(
                peer.url, timeout=self.config.sync.request_timeout_seconds
            ),
        )

    def _on_peer_lost(self, peer: DiscoveredPeer) -> None:
        if peer.device_id in self._discovered:
            self._discovered.discard(peer.device_id)
            self.coordinator.remove_peer(peer.device_id)

    async def start(self) -> None:
        """Start background components."""
        logger.info(f"Starting device {self.config.device.id}")

        if self.discovery:
            await self.discovery.start()

        if self.monitor:
            await self.monitor.start()

        if self.config.sync.enabled:
            self._sync_loop_task = asyncio.create_task(
                self.coordinator.sync_loop(
                    interval_seconds=self.config.sync.interval_seconds,
                    stop_event=self._stop_event,
                )
            )

        self._running = True
        logger.info("Device started")

    async def stop(self) -> None:
        """Stop background components and close storage."""
        logger.info("Stopping device...")
        self._running = False
        self._stop_event.set()

        if self._sync_loop_task:
            await self._sync_loop_task
            self._sync_loop_task = None

        if self.monitor:
            await self.monitor.stop()

        if self.discovery:
            await self.discovery.stop()

        self.cursors.close()
        self.log.close()
        logger.info("Device stopped")


async def run_node(config: Config) -> None:
    """Run a device with its sync server until interrupted."""
    import uvicorn

    from .server import create_app

    node = Node(config)
    app = create_app(config, node.log, node.coordinator)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level="warning",
        )
    )

    try:
        await node.start()
        await server.serve()
    finally:
        await node.stop()
