"""Peer transports implementing the GetEvents/PutEvents capability.

Concrete variants:
- LocalNetworkTransport: HTTP to a peer's sync server on the LAN
- CloudRelayTransport: HTTP to a relay that forwards to the peer
- LoopbackTransport: direct calls into another in-process event log
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from ..exceptions import TransientTransportError, TransportError
from .event_log import EventLog
from .events import Event

logger = logging.getLogger(__name__)

EVENTS_PATH = "/api/sync/events"


class PeerTransport(ABC):
    """Capability interface for exchanging events with one peer."""

    kind: str = "abstract"

    @abstractmethod
    async def get_events(self, since: str | None, limit: int) -> list[Event]:
        """Fetch the peer's events after ``since`` (a cursor in the peer's log)."""

    @abstractmethod
    async def put_events(self, events: list[Event]) -> str | None:
        """Deliver events to the peer.

        Returns:
            Ack cursor: id of the last event the peer accepted.
        """

    def describe(self) -> str:
        return self.kind


class HttpPeerTransport(PeerTransport):
    """Shared HTTP plumbing for peers speaking the JSON sync protocol."""

    kind = "http"

    def __init__(
        self,
        base_url: str,
        events_path: str = EVENTS_PATH,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the transport.

        Args:
            base_url: Base URL of the peer (e.g., "http://192.168.1.20:8080").
            events_path: Path of the events endpoint.
            timeout: Per-request timeout in seconds.
            headers: Extra headers sent with every request.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url
        self.events_path = events_path
        self.timeout = timeout
        self._headers = headers or {}
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.events_path}"

    def describe(self) -> str:
        return f"{self.kind}:{self.base_url}"

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> Any:
        """Make one HTTP request and map failures onto transport errors."""
        url = self.url
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method, url, params=params, json=json_data
                )
        except httpx.ConnectError as e:
            raise TransientTransportError(f"Connection to {url} failed: {e}") from e
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"Request to {url} timed out") from e
        except httpx.TransportError as e:
            raise TransientTransportError(f"Network error talking to {url}: {e}") from e

        if response.status_code >= 500:
            raise TransientTransportError(
                f"Server error {response.status_code} from {url}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise TransportError(
                f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {url}") from e

    async def get_events(self, since: str | None, limit: int) -> list[Event]:
        params: dict[str, Any] = {"limit": limit}
        if since is not None:
            params["since"] = since

        data = await self._request("GET", params=params)
        try:
            return [Event.from_dict(e) for e in data.get("events", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Malformed events from {self.url}: {e}") from e

    async def put_events(self, events: list[Event]) -> str | None:
        if not events:
            return None

        data = await self._request(
            "POST", json_data={"events": [e.to_dict() for e in events]}
        )
        return data.get("ack")


class LocalNetworkTransport(HttpPeerTransport):
    """Peer reachable directly on the local network."""

    kind = "local"


class CloudRelayTransport(HttpPeerTransport):
    """Peer reached through a cloud relay."""

    kind = "relay"

    def __init__(
        self,
        relay_url: str,
        peer_id: str,
        device_id: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"X-Device-Id": device_id}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        super().__init__(
            base_url=relay_url,
            events_path=f"/api/relay/{peer_id}/events",
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self.peer_id = peer_id


class LoopbackTransport(PeerTransport):
    """Peer living in the same process (tests, simulators, multi-account)."""

    kind = "loopback"

    def __init__(self, log: EventLog):
        self.log = log
        self.online = True

    def _check_online(self) -> None:
        if not self.online:
            raise TransientTransportError(f"Peer {self.log.device_id} unreachable")

    async def get_events(self, since: str | None, limit: int) -> list[Event]:
        self._check_online()
        return self.log.since(since).take(limit)

    async def put_events(self, events: list[Event]) -> str | None:
        self._check_online()
        if not events:
            return None
        self.log.merge(events)
        return events[-1].id

    def describe(self) -> str:
        return f"loopback:{self.log.device_id}"


def build_transport(
    kind: str,
    peer_id: str,
    device_id: str,
    url: str = "",
    token: str | None = None,
    relay_url: str = "",
    timeout: float = 30.0,
) -> PeerTransport:
    """Build an HTTP transport from peer configuration."""
    if kind == "local":
        if not url:
            raise TransportError(f"Peer {peer_id} has no URL configured")
        return LocalNetworkTransport(url, timeout=timeout)

    if kind == "relay":
        base = url or relay_url
        if not base:
            raise TransportError(f"Peer {peer_id} has no relay URL configured")
        return CloudRelayTransport(
            base, peer_id=peer_id, device_id=device_id, token=token, timeout=timeout
        )

    raise TransportError(f"Unknown transport kind: {kind}")
