"""Local-first sync engine for transport events.

Provides an append-only event log with Lamport clocks, deterministic
conflict resolution, peer sync sessions and a connectivity monitor for
devices that may be offline for long periods.
"""

from .connectivity import ConnectivityChange, ConnectivityMonitor
from .coordinator import SyncCoordinator
from .cursor_store import CursorStore
from .event_log import EventLog, EventStream, MergeResult
from .events import Event, EventKind, LogicalClock, SyncResult, SyncState
from .resolver import ConflictSet, Resolution, group_conflicts, resolve
from .transport import (
    CloudRelayTransport,
    LocalNetworkTransport,
    LoopbackTransport,
    PeerTransport,
)

__all__ = [
    "CloudRelayTransport",
    "ConflictSet",
    "ConnectivityChange",
    "ConnectivityMonitor",
    "CursorStore",
    "Event",
    "EventKind",
    "EventLog",
    "EventStream",
    "LocalNetworkTransport",
    "LogicalClock",
    "LoopbackTransport",
    "MergeResult",
    "PeerTransport",
    "Resolution",
    "SyncCoordinator",
    "SyncResult",
    "SyncState",
    "group_conflicts",
    "resolve",
]
