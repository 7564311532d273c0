"""Core data model for transport events and per-peer sync state."""

import base64
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventKind(Enum):
    """Kind of transport state change carried by an event."""

    LOCATION = "location"
    TRIP_STATUS = "trip_status"
    ROUTE = "route"
    ETA = "eta"
    MESSAGE = "message"


@dataclass(frozen=True)
class Event:
    """A single immutable transport event.

    ``clock`` is the Lamport timestamp assigned by the writing device;
    ``parent_id`` is the resource head the writer saw when it wrote.
    """

    id: str
    device_id: str
    clock: int
    kind: EventKind
    resource_id: str
    payload: bytes = b""
    parent_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def new(
        cls,
        device_id: str,
        clock: int,
        kind: EventKind | str,
        resource_id: str,
        payload: bytes = b"",
        parent_id: str | None = None,
    ) -> "Event":
        """Create an event with a fresh UUID."""
        return cls(
            id=str(uuid.uuid4()),
            device_id=device_id,
            clock=clock,
            kind=EventKind(kind),
            resource_id=resource_id,
            payload=payload,
            parent_id=parent_id,
            created_at=datetime.now(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary for the wire."""
        return {
            "id": self.id,
            "device_id": self.device_id,
            "clock": self.clock,
            "kind": self.kind.value,
            "resource_id": self.resource_id,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """Create from a wire dictionary."""
        return cls(
            id=data["id"],
            device_id=data["device_id"],
            clock=int(data["clock"]),
            kind=EventKind(data["kind"]),
            resource_id=data["resource_id"],
            payload=base64.b64decode(data.get("payload") or ""),
            parent_id=data.get("parent_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class LogicalClock:
    """Lamport clock for one device."""

    def __init__(self, device_id: str, value: int = 0):
        self.device_id = device_id
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def tick(self) -> int:
        """Increment and return the clock."""
        with self._lock:
            self._value += 1
            return self._value

    def observe(self, remote: int) -> None:
        """Advance past a clock value seen on another device."""
        with self._lock:
            self._value = max(self._value, remote)


@dataclass
class SyncState:
    """Per-peer sync cursors.

    ``last_acked_event_id`` points into the local log; ``last_received_event_id``
    points into the peer's log.
    """

    peer_id: str
    last_acked_event_id: str | None = None
    last_received_event_id: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "last_acked_event_id": self.last_acked_event_id,
            "last_received_event_id": self.last_received_event_id,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncState":
        return cls(
            peer_id=data["peer_id"],
            last_acked_event_id=data.get("last_acked_event_id"),
            last_received_event_id=data.get("last_received_event_id"),
            updated_at=(
                datetime.fromisoformat(data["updated_at"])
                if data.get("updated_at")
                else None
            ),
        )


@dataclass
class SyncResult:
    """Result of one sync session with a peer."""

    peer_id: str
    sent: int = 0
    received: int = 0
    conflicts: int = 0
    attempts: int = 1
    finished_at: datetime | None = None
