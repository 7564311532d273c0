"""mDNS/Zeroconf discovery of transport-share devices.

Lets devices on the same network find each other's sync servers without
manual peer configuration.
"""

import asyncio
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from zeroconf import ServiceInfo, ServiceStateChange, Zeroconf
from zeroconf import ServiceBrowser as ZeroconfServiceBrowser
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_TYPE = "_transportshare._tcp"


@dataclass
class DiscoveredPeer:
    """A device found on the local network."""

    device_id: str
    name: str
    url: str
    port: int
    last_seen: datetime = field(default_factory=datetime.now)


PeerCallback = Callable[[DiscoveredPeer], None]


def parse_service(
    service_name: str,
    properties: dict[bytes, bytes | None],
    address: bytes,
    port: int,
) -> DiscoveredPeer:
    """Build a DiscoveredPeer from resolved mDNS service data."""
    name = service_name.split(".")[0]
    raw_id = properties.get(b"device_id")
    device_id = raw_id.decode("utf-8") if raw_id else name
    host = socket.inet_ntoa(address)
    return DiscoveredPeer(
        device_id=device_id,
        name=name,
        url=f"http://{host}:{port}",
        port=port,
    )


class ServiceAnnouncer:
    """Announces this device's sync server via mDNS."""

    def __init__(
        self,
        device_id: str,
        device_name: str,
        port: int,
        service_type: str = DEFAULT_SERVICE_TYPE,
    ):
        """Initialize the service announcer.

        Args:
            device_id: Identifier peers use for this device.
            device_name: Human-readable instance name.
            port: Port where the sync server is listening.
            service_type: mDNS service type.
        """
        self.device_id = device_id
        self.device_name = device_name
        self.port = port
        self.service_type = service_type
        self._zeroconf: AsyncZeroconf | None = None
        self._service_info: ServiceInfo | None = None

    async def start(self) -> None:
        """Start announcing the service."""
        hostname = socket.gethostname()
        local_ip = socket.gethostbyname(hostname)

        service_name = f"{self.device_name}.{self.service_type}.local."
        type_name = f"{self.service_type}.local."

        properties = {
            b"device_id": self.device_id.encode("utf-8"),
            b"version": b"0.1.0",
        }

        self._service_info = ServiceInfo(
            type_name,
            service_name,
            addresses=[socket.inet_aton(local_ip)],
            port=self.port,
            properties=properties,
            server=f"{hostname}.local.",
        )

        self._zeroconf = AsyncZeroconf()
        await self._zeroconf.async_register_service(self._service_info)

        logger.info(f"Announcing {service_name} at {local_ip}:{self.port}")

    async def stop(self) -> None:
        """Stop announcing the service."""
        if self._zeroconf and self._service_info:
            await self._zeroconf.async_unregister_service(self._service_info)
            await self._zeroconf.async_close()
            self._zeroconf = None
            logger.info("Service announcement stopped")


class ServiceBrowser:
    """Browses for other transport-share devices via mDNS."""

    def __init__(
        self,
        service_type: str = DEFAULT_SERVICE_TYPE,
        on_found: PeerCallback | None = None,
        on_lost: PeerCallback | None = None,
    ):
        self.service_type = service_type
        self._on_found = on_found
        self._on_lost = on_lost
        self._zeroconf: Zeroconf | None = None
        self._browser: ZeroconfServiceBrowser | None = None
        self._discovered: dict[str, DiscoveredPeer] = {}
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        """Handle service state changes from the zeroconf thread."""
        if not self._loop:
            return

        if state_change in (ServiceStateChange.Added, ServiceStateChange.Updated):
            asyncio.run_coroutine_threadsafe(
                self._add_service(zeroconf, service_type, name), self._loop
            )
        elif state_change is ServiceStateChange.Removed:
            asyncio.run_coroutine_threadsafe(self._remove_service(name), self._loop)

    async def _add_service(
        self, zeroconf: Zeroconf, service_type: str, name: str
    ) -> None:
        info = AsyncServiceInfo(service_type, name)
        await info.async_request(zeroconf, 3000)

        if not info.addresses:
            return

        peer = parse_service(name, info.properties or {}, info.addresses[0], info.port)
        await self.record(name, peer)

    async def record(self, name: str, peer: DiscoveredPeer) -> None:
        """Add or refresh a discovered peer."""
        async with self._lock:
            is_new = name not in self._discovered
            self._discovered[name] = peer

        if is_new:
            logger.info(f"Discovered device {peer.device_id} at {peer.url}")
        if self._on_found:
            self._on_found(peer)

    async def _remove_service(self, name: str) -> None:
        async with self._lock:
            peer = self._discovered.pop(name, None)

        if peer is not None:
            logger.info(f"Device removed: {peer.device_id}")
            if self._on_lost:
                self._on_lost(peer)

    async def start(self) -> None:
        """Start browsing for services."""
        self._loop = asyncio.get_running_loop()
        self._zeroconf = Zeroconf()
        self._browser = ZeroconfServiceBrowser(
            self._zeroconf,
            f"{self.service_type}.local.",
            handlers=[self._on_service_state_change],
        )
        logger.info(f"Browsing for {self.service_type} services")

    async def stop(self) -> None:
        """Stop browsing for services."""
        if self._browser:
            self._browser.cancel()
        if self._zeroconf:
            self._zeroconf.close()
        logger.info("Service browsing stopped")

    async def get_discovered_peers(self) -> list[DiscoveredPeer]:
        """List peers currently announced on the network.

        Peers leave this list when zeroconf reports their service removed,
        either by goodbye packet or by record expiry.
        """
        async with self._lock:
            return list(self._discovered.values())


class DiscoveryManager:
    """Announces this device and browses for peers."""

    def __init__(
        self,
        device_id: str,
        device_name: str,
        port: int,
        service_type: str = DEFAULT_SERVICE_TYPE,
        announce: bool = True,
        browse: bool = True,
        on_found: PeerCallback | None = None,
        on_lost: PeerCallback | None = None,
    ):
        self.device_id = device_id

        self._announcer: ServiceAnnouncer | None = None
        if announce:
            self._announcer = ServiceAnnouncer(
                device_id=device_id,
                device_name=device_name,
                port=port,
                service_type=service_type,
            )

        self._browser: ServiceBrowser | None = None
        if browse:
            self._browser = ServiceBrowser(
                service_type=service_type,
                on_found=self._filter_self(on_found),
                on_lost=self._filter_self(on_lost),
            )

    def _filter_self(self, callback: PeerCallback | None) -> PeerCallback | None:
        if callback is None:
            return None

        def wrapped(peer: DiscoveredPeer) -> None:
            if peer.device_id != self.device_id:
                callback(peer)

        return wrapped

    @property
    def browser(self) -> ServiceBrowser | None:
        return self._browser

    async def start(self) -> None:
        """Start discovery (announce + browse)."""
        if self._announcer:
            await self._announcer.start()
        if self._browser:
            await self._browser.start()
        logger.info("Discovery manager started")

    async def stop(self) -> None:
        """Stop discovery."""
        if self._announcer:
            await self._announcer.stop()
        if self._browser:
            await self._browser.stop()
        logger.info("Discovery manager stopped")

    async def get_discovered_peers(self) -> list[DiscoveredPeer]:
        if not self._browser:
            return []
        peers = await self._browser.get_discovered_peers()
        return [p for p in peers if p.device_id != self.device_id]
