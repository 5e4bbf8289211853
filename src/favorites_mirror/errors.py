from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from favorites_mirror.service import RunStats


class FavoritesMirrorError(Exception):
    """Base class for sync failures."""


class NetworkError(FavoritesMirrorError):
    """Raised on connection failures, timeouts and transient server errors."""


class RateLimitError(NetworkError):
    """Raised when the remote answers with a throttle/overload status."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class IntegrityError(FavoritesMirrorError):
    """Raised when downloaded bytes do not match the expected checksum or size."""


class UnavailableError(FavoritesMirrorError):
    """Raised when a single post or asset no longer exists on the remote."""


class ProtocolError(FavoritesMirrorError):
    """Raised when the remote returns malformed or non-monotonic pages."""


class AuthError(FavoritesMirrorError):
    """Raised when the user id or credentials are rejected."""


class StorageError(FavoritesMirrorError):
    """Raised when the local archive cannot be written."""


class LockError(StorageError):
    """Raised when another run already holds the archive lock."""


class SyncAbortedError(FavoritesMirrorError):
    """Raised when a fatal error stops the run; carries the partial stats."""

    def __init__(
        self,
        cause: FavoritesMirrorError,
        stats: RunStats,
        *,
        post_id: int | None = None,
        cursor: int | None = None,
    ) -> None:
        location = f"post {post_id}" if post_id is not None else f"cursor {cursor}"
        super().__init__(f"sync aborted at {location}: {cause}")
        self.cause = cause
        self.stats = stats
        self.post_id = post_id
        self.cursor = cursor


FATAL_ERRORS = (ProtocolError, AuthError, StorageError)
ITEM_ERRORS = (NetworkError, IntegrityError, UnavailableError)
