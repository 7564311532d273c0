"""Exception hierarchy for transport-share."""


class TransportShareError(Exception):
    """Base exception for all transport-share errors."""


class ConfigError(TransportShareError):
    """Invalid configuration value."""


class InvalidEventError(TransportShareError):
    """Event rejected by the local log (ordering or integrity violation).

    Never retried.
    """


class ConflictResolutionError(TransportShareError):
    """The resolver could not pick a canonical event."""


class TransportError(TransportShareError):
    """Peer request failed and should not be retried."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientTransportError(TransportError):
    """Peer request failed in a way worth retrying (network, timeout, 5xx)."""


class SyncError(TransportShareError):
    """Base class for errors surfaced by a sync session."""

    def __init__(self, message: str, peer_id: str):
        self.peer_id = peer_id
        super().__init__(message)


class SyncFailed(SyncError):
    """Sync gave up after exhausting retries or hitting a permanent error."""

    def __init__(
        self,
        peer_id: str,
        attempts: int,
        last_error: Exception | None = None,
    ):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Sync with {peer_id} failed after {attempts} attempt(s): {last_error}",
            peer_id,
        )


class SyncTimeout(SyncError):
    """Sync was cancelled after exceeding its timeout."""

    def __init__(self, peer_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"Sync with {peer_id} timed out after {timeout}s", peer_id)
