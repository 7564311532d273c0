"""Sync coordinator driving sessions with known peers.

Handles batching, per-batch cursor persistence, retry with exponential
backoff and overall timeouts.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from ..exceptions import (
    SyncError,
    SyncFailed,
    SyncTimeout,
    TransientTransportError,
    TransportError,
    TransportShareError,
)
from .cursor_store import CursorStore
from .event_log import EventLog
from .events import SyncResult, SyncState
from .transport import PeerTransport

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 60.0) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(base * (2 ** (attempt - 1)), cap)


class SyncCoordinator:
    """Synchronizes the local event log with a set of peers.

    Supports:
    - Push: send local events the peer has not acknowledged
    - Pull: fetch the peer's events after our cursor in its log
    - Concurrent sync with every known peer
    """

    def __init__(
        self,
        log: EventLog,
        cursors: CursorStore,
        batch_size: int = 100,
        timeout: float = 30.0,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
        sleep: Sleep | None = None,
    ):
        """Initialize the coordinator.

        Args:
            log: Local event log.
            cursors: Sidecar store for per-peer sync state.
            batch_size: Maximum events per request.
            timeout: Default timeout in seconds for a whole sync session.
            max_attempts: Attempts before reporting SyncFailed.
            backoff_base: Delay after the first failed attempt.
            backoff_cap: Upper bound on the retry delay.
            sleep: Coroutine used to wait between attempts.
        """
        self.log = log
        self.cursors = cursors
        self.batch_size = batch_size
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep or asyncio.sleep
        self._peers: dict[str, PeerTransport] = {}
        self._peer_locks: dict[str, asyncio.Lock] = {}
        self._last_results: dict[str, SyncResult] = {}
        self._last_errors: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Peer registry
    # ------------------------------------------------------------------

    def add_peer(self, peer_id: str, transport: PeerTransport) -> None:
        """Register or replace the transport used to reach a peer."""
        if peer_id == self.log.device_id:
            logger.debug("Ignoring attempt to register local device as a peer")
            return
        previous = self._peers.get(peer_id)
        self._peers[peer_id] = transport
        if previous is None:
            logger.info(f"Added peer {peer_id} via {transport.describe()}")
        elif previous.describe() != transport.describe():
            logger.info(f"Peer {peer_id} now reachable via {transport.describe()}")

    def remove_peer(self, peer_id: str) -> None:
        if self._peers.pop(peer_id, None) is not None:
            logger.info(f"Removed peer {peer_id}")

    @property
    def peers(self) -> list[str]:
        return sorted(self._peers)

    def _lock_for(self, peer_id: str) -> asyncio.Lock:
        if peer_id not in self._peer_locks:
            self._peer_locks[peer_id] = asyncio.Lock()
        return self._peer_locks[peer_id]

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_with(self, peer_id: str, timeout: float | None = None) -> SyncResult:
        """Run a full push/pull session with one peer.

        Raises:
            SyncFailed: Retries exhausted, non-retryable transport error, or
                unknown peer.
            SyncTimeout: The session exceeded its timeout.
            InvalidEventError: The peer sent events the log rejected.
        """
        transport = self._peers.get(peer_id)
        if transport is None:
            raise SyncFailed(peer_id, 0, KeyError(f"Unknown peer {peer_id}"))

        timeout = self.timeout if timeout is None else timeout
        try:
            result = await asyncio.wait_for(
                self._locked_sync(peer_id, transport), timeout=timeout
            )
        except asyncio.TimeoutError:
            self._last_errors[peer_id] = f"timeout after {timeout}s"
            logger.warning(f"Sync with {peer_id} timed out after {timeout}s")
            raise SyncTimeout(peer_id, timeout) from None
        except SyncError as e:
            self._last_errors[peer_id] = str(e)
            raise

        self._last_results[peer_id] = result
        self._last_errors.pop(peer_id, None)
        logger.info(
            f"Sync with {peer_id}: sent={result.sent}, received={result.received}, "
            f"conflicts={result.conflicts}, attempts={result.attempts}"
        )
        return result

    async def _locked_sync(
        self, peer_id: str, transport: PeerTransport
    ) -> SyncResult:
        # Waiting for another session with this peer counts against the timeout
        async with self._lock_for(peer_id):
            return await self._sync_with_retry(peer_id, transport)

    async def _sync_with_retry(
        self, peer_id: str, transport: PeerTransport
    ) -> SyncResult:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._sync_round(peer_id, transport)
                result.attempts = attempt
                return result
            except TransientTransportError as e:
                last_error = e
                logger.warning(
                    f"Sync with {peer_id} failed, "
                    f"attempt {attempt}/{self.max_attempts}: {e}"
                )
            except TransportError as e:
                raise SyncFailed(peer_id, attempt, e) from e

            if attempt < self.max_attempts:
                await self._sleep(
                    backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                )

        raise SyncFailed(peer_id, self.max_attempts, last_error)

    async def _sync_round(self, peer_id: str, transport: PeerTransport) -> SyncResult:
        """One attempt: push then pull, saving cursors after every batch."""
        state = self.cursors.get_or_create(peer_id)
        result = SyncResult(peer_id=peer_id)

        result.sent = await self._push(peer_id, transport, state)

        received, conflicts = await self._pull(transport, state)
        result.received = received
        result.conflicts = conflicts
        result.finished_at = datetime.now()
        return result

    async def _push(
        self, peer_id: str, transport: PeerTransport, state: SyncState
    ) -> int:
        sent = 0
        while True:
            batch = self.log.since(state.last_acked_event_id).take(self.batch_size)
            if not batch:
                return sent

            # The peer already holds the events it wrote.
            outgoing = [e for e in batch if e.device_id != peer_id]
            if outgoing:
                ack = await transport.put_events(outgoing)
                if ack != outgoing[-1].id:
                    raise TransportError(
                        f"Peer {peer_id} acknowledged {ack!r}, "
                        f"expected {outgoing[-1].id!r}"
                    )
                sent += len(outgoing)

            state.last_acked_event_id = batch[-1].id
            self.cursors.save(state)

            if len(batch) < self.batch_size:
                return sent

    async def _pull(
        self, transport: PeerTransport, state: SyncState
    ) -> tuple[int, int]:
        received = 0
        conflicts = 0
        while True:
            batch = await transport.get_events(
                state.last_received_event_id, self.batch_size
            )
            if not batch:
                return received, conflicts

            merged = self.log.merge(batch)
            received += merged.added
            conflicts += len(merged.conflicts)

            state.last_received_event_id = batch[-1].id
            self.cursors.save(state)

            if len(batch) < self.batch_size:
                return received, conflicts

    async def sync_all(
        self, timeout: float | None = None
    ) -> dict[str, SyncResult | TransportShareError]:
        """Sync with every known peer concurrently.

        Per-peer failures (sync errors and rejected events) are logged and
        returned instead of raised.
        """
        peer_ids = self.peers
        if not peer_ids:
            logger.debug("No peers to sync with")
            return {}

        outcomes = await asyncio.gather(
            *(self.sync_with(peer_id, timeout) for peer_id in peer_ids),
            return_exceptions=True,
        )

        results: dict[str, SyncResult | TransportShareError] = {}
        for peer_id, outcome in zip(peer_ids, outcomes):
            if isinstance(outcome, TransportShareError):
                logger.error(f"Sync with {peer_id} failed: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            results[peer_id] = outcome
        return results

    async def sync_loop(
        self,
        interval_seconds: float = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run periodic sync with all peers until ``stop_event`` is set."""
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                await self.sync_all()
                self.compact()
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(interval_seconds)

        logger.info("Sync loop stopped")

    # ------------------------------------------------------------------
    # Maintenance & status
    # ------------------------------------------------------------------

    def compact(self) -> int:
        """Compact events acknowledged by every known peer."""
        if not self._peers:
            return 0
        acked = []
        for peer_id in self.peers:
            state = self.cursors.get(peer_id)
            acked.append(state.last_acked_event_id if state else None)
        return self.log.compact(acked)

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status per peer."""
        peers = {}
        for peer_id in self.peers:
            state = self.cursors.get(peer_id)
            last = self._last_results.get(peer_id)
            peers[peer_id] = {
                "transport": self._peers[peer_id].describe(),
                "last_acked_event_id": state.last_acked_event_id if state else None,
                "last_received_event_id": (
                    state.last_received_event_id if state else None
                ),
                "last_sync": (
                    last.finished_at.isoformat()
                    if last and last.finished_at
                    else None
                ),
                "last_error": self._last_errors.get(peer_id),
            }

        return {
            "device_id": self.log.device_id,
            "clock": self.log.clock.value,
            "live_events": self.log.count(),
            "peers": peers,
        }
