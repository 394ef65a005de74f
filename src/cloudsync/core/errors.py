"""Exception hierarchy for cloudsync.

Every error carries a ``retryable`` flag. The sync processor consults it to
decide between scheduling a retry with backoff and failing the item for good.
"""

from __future__ import annotations


class CloudSyncError(Exception):
    """Base exception for all cloudsync errors."""

    retryable = False


class NotInitializedError(CloudSyncError):
    """Operation attempted before the component was initialized."""


class EntryNotFoundError(CloudSyncError):
    """Unknown identifier (cache entry, sync record, pinned folder)."""


class NotAllowedError(CloudSyncError):
    """Operation refused, e.g. eviction of a pinned entry."""


class InvalidTransitionError(CloudSyncError):
    """Raised when attempting an invalid SyncItem status transition."""


class TransportError(CloudSyncError):
    """Failure reported by the remote transport."""


class TransientNetworkError(TransportError):
    """Retryable transport failure (connection reset, timeout, throttling)."""

    retryable = True


class PermanentRemoteError(TransportError):
    """Non-retryable transport failure (not found, forbidden, bad request)."""


class RemoteNotFoundError(PermanentRemoteError):
    """The remote item does not exist (anymore)."""


class DeltaTokenExpiredError(PermanentRemoteError):
    """The stored delta token is no longer accepted by the remote service."""


class ChecksumMismatchError(CloudSyncError):
    """Transferred content does not match its expected checksum."""

    def __init__(self, path: str, expected: str, actual: str) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {path}: expected {expected[:12]}, got {actual[:12]}"
        )


class LocalIOError(CloudSyncError):
    """Local filesystem failure. Retried up to the configured limit."""

    retryable = True


def is_retryable(error: BaseException) -> bool:
    """Tell whether the processor should retry after ``error``.

    Plain ``OSError`` coming out of a handler is a local filesystem problem
    and is treated like :class:`LocalIOError`.
    """
    if isinstance(error, CloudSyncError):
        return error.retryable
    return isinstance(error, OSError)
