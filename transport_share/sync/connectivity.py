"""Connectivity monitor: background network probing and sync triggering.

Runs as an asyncio task independent of sync sessions. The only state it
owns is its online flag. On a transition to online it schedules a sync
with every known peer without waiting for it.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

if TYPE_CHECKING:
    from .coordinator import SyncCoordinator

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[["ConnectivityChange"], Any]


@dataclass
class ConnectivityChange:
    """Notification emitted when connectivity flips."""

    online: bool
    previous: bool | None
    timestamp: datetime = field(default_factory=datetime.now)


class ConnectivityMonitor:
    """Tracks network availability and kicks off sync when it returns."""

    def __init__(
        self,
        coordinator: "SyncCoordinator | None" = None,
        probe: Probe | None = None,
        probe_host: str = "",
        probe_port: int = 443,
        check_interval: float = 30.0,
        probe_timeout: float = 5.0,
    ):
        """Initialize the monitor.

        Args:
            coordinator: Coordinator whose peers are synced on reconnect.
            probe: Optional coroutine returning True when online. Defaults
                to a TCP connect to ``probe_host:probe_port``.
            probe_host: Host used by the default probe. Empty means always online.
            probe_port: Port used by the default probe.
            check_interval: Seconds between probes.
            probe_timeout: Seconds before a probe counts as failed.
        """
        self.coordinator = coordinator
        self._probe = probe or self._probe_tcp
        self.probe_host = probe_host
        self.probe_port = probe_port
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout

        self._online: bool | None = None
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._sync_tasks: set[asyncio.Task] = set()

    @property
    def online(self) -> bool:
        return bool(self._online)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_change(self, listener: Listener) -> None:
        """Register a listener for connectivity transitions."""
        self._listeners.append(listener)

    def set_probe_from_url(self, url: str) -> None:
        """Probe the host:port of a peer or relay URL."""
        parsed = urlparse(url)
        if not parsed.hostname:
            logger.warning(f"Cannot derive probe target from {url!r}")
            return
        self.probe_host = parsed.hostname
        self.probe_port = parsed.port or (443 if parsed.scheme == "https" else 80)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background probe task."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="connectivity-monitor")
        logger.info(f"ConnectivityMonitor started (interval={self.check_interval}s)")

    async def stop(self) -> None:
        """Stop probing and cancel any sync it scheduled."""
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

        for task in list(self._sync_tasks):
            task.cancel()
        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)
        logger.info("ConnectivityMonitor stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.check()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.check_interval
                )
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def check(self) -> bool:
        """Probe once and record the result."""
        try:
            online = await self._probe()
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        await self._update(bool(online))
        return bool(online)

    async def set_online(self, online: bool) -> None:
        """Record connectivity reported by the platform."""
        await self._update(online)

    async def _probe_tcp(self) -> bool:
        """TCP connect to the probe target."""
        if not self.probe_host:
            return True
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.probe_host, self.probe_port),
                timeout=self.probe_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _update(self, online: bool) -> None:
        previous = self._online
        if previous == online:
            return

        self._online = online
        change = ConnectivityChange(online=online, previous=previous)
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")

        for listener in self._listeners:
            try:
                outcome = listener(change)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Connectivity listener failed: {e}")

        if online and self.coordinator is not None:
            task = asyncio.create_task(self._sync_all())
            self._sync_tasks.add(task)
            task.add_done_callback(self._sync_tasks.discard)

    async def _sync_all(self) -> None:
        try:
            await self.coordinator.sync_all()
        except Exception as e:
            logger.error(f"Reconnect sync failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for syncs triggered by reconnects to finish."""
        while self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)
