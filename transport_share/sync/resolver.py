"""Deterministic resolution of concurrent updates to the same resource.

Every peer holding the same conflict set picks the same winner:

* the higher logical clock wins
* on a clock tie, the lexicographically smaller device id wins
* on a tie of both (never produced by a well-behaved device), the smaller
  event id wins

The resolver keeps no state, so it is safe to call from concurrent sync
sessions.
"""

from dataclasses import dataclass, field

from ..exceptions import ConflictResolutionError
from .events import Event


@dataclass(frozen=True)
class ConflictSet:
    """Events concurrently modifying one resource."""

    resource_id: str
    events: tuple[Event, ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, *events: Event) -> "ConflictSet":
        if not events:
            raise ConflictResolutionError("Cannot build a conflict set from no events")
        return cls(resource_id=events[0].resource_id, events=tuple(events))

    @property
    def device_ids(self) -> set[str]:
        return {e.device_id for e in self.events}


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving a conflict set."""

    resource_id: str
    winner: Event
    losers: tuple[Event, ...]


def _precedence(event: Event) -> tuple[int, str, str]:
    # Sorted ascending, so negate the clock to put the highest first.
    return (-event.clock, event.device_id, event.id)


def resolve(conflict_set: ConflictSet) -> Event:
    """Pick the canonical event of a conflict set.

    Raises:
        ConflictResolutionError: If the set is empty or mixes resources.
    """
    if not conflict_set.events:
        raise ConflictResolutionError(
            f"Empty conflict set for resource {conflict_set.resource_id!r}"
        )

    resources = {e.resource_id for e in conflict_set.events}
    if resources != {conflict_set.resource_id}:
        raise ConflictResolutionError(
            f"Conflict set for {conflict_set.resource_id!r} "
            f"contains events for {sorted(resources)}"
        )

    return min(conflict_set.events, key=_precedence)


def resolve_all(conflict_set: ConflictSet) -> Resolution:
    """Resolve and report which events lost."""
    winner = resolve(conflict_set)
    losers = tuple(e for e in conflict_set.events if e.id != winner.id)
    return Resolution(
        resource_id=conflict_set.resource_id, winner=winner, losers=losers
    )


def group_conflicts(events: list[Event]) -> list[ConflictSet]:
    """Group events by resource, keeping only groups written by several devices."""
    by_resource: dict[str, list[Event]] = {}
    for event in events:
        by_resource.setdefault(event.resource_id, []).append(event)

    return [
        ConflictSet(resource_id=resource_id, events=tuple(group))
        for resource_id, group in sorted(by_resource.items())
        if len({e.device_id for e in group}) > 1
    ]
