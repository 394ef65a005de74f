"""Shared types and dataclasses for sync operations.

This module provides:
- SyncOperation, SyncItemStatus, ChangeSource: Item enums
- SyncItem: A unit of reconciliation work with a validated state machine
- SyncRecord: Last known synced state of one item
- SyncStateSnapshot: Persisted engine state (delta token, records)
- SyncStats: Point-in-time aggregates for a sync pass
- ProgressEvent, ConflictNotice, SyncCompleteEvent: Observer payloads
- Type aliases for callbacks

Item state machine:
    PENDING -> IN_PROGRESS -> COMPLETED
                           -> ERROR    -> PENDING (retry)
                           -> CONFLICT -> PENDING | COMPLETED | SKIPPED
                           -> SKIPPED
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum, auto

from cloudsync.core.errors import InvalidTransitionError


class SyncOperation(IntEnum):
    """Operation a SyncItem asks the processor to perform."""

    UPLOAD = auto()
    DOWNLOAD = auto()
    UPDATE = auto()
    DELETE = auto()
    MOVE = auto()
    CREATE_FOLDER = auto()
    CONFLICT = auto()


class SyncItemStatus(IntEnum):
    """Status of a SyncItem."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETED = auto()
    ERROR = auto()
    CONFLICT = auto()
    SKIPPED = auto()


class ChangeSource(IntEnum):
    """Which side observed the change."""

    LOCAL = auto()  # From local scan or watcher
    REMOTE = auto()  # From remote delta


# Valid state transitions
VALID_TRANSITIONS: dict[SyncItemStatus, set[SyncItemStatus]] = {
    SyncItemStatus.PENDING: {SyncItemStatus.IN_PROGRESS, SyncItemStatus.SKIPPED},
    SyncItemStatus.IN_PROGRESS: {
        SyncItemStatus.COMPLETED,
        SyncItemStatus.ERROR,
        SyncItemStatus.CONFLICT,
        SyncItemStatus.SKIPPED,
    },
    SyncItemStatus.ERROR: {SyncItemStatus.PENDING},  # Retry
    SyncItemStatus.CONFLICT: {
        SyncItemStatus.PENDING,
        SyncItemStatus.COMPLETED,
        SyncItemStatus.SKIPPED,
    },
    SyncItemStatus.COMPLETED: set(),  # Terminal
    SyncItemStatus.SKIPPED: set(),  # Terminal
}

# Fields a scanner may refresh on an item that is already queued or active.
MERGEABLE_FIELDS = (
    "local_path",
    "remote_path",
    "local_modified",
    "remote_modified",
    "size",
    "version_tag",
    "local_hash",
    "remote_hash",
)


@dataclass
class SyncItem:
    """A unit of reconciliation work.

    Attributes:
        local_path: Absolute local path.
        remote_path: Remote path ("/" separated, rooted at "/").
        file_id: Stable remote identifier ("" until the item exists remotely).
        operation: Operation to perform.
        status: Current status (only the processor changes it).
        source: Side that observed the change.
        local_modified: Local mtime (epoch seconds, 0 if unknown).
        remote_modified: Remote mtime (epoch seconds, 0 if unknown).
        size: Content size in bytes.
        version_tag: Remote version tag (etag-equivalent).
        local_hash: SHA-256 of local content ("" if not computed).
        remote_hash: SHA-256 of remote content ("" if unknown).
        retry_count: Retries already scheduled.
        error_message: Last error message.
        pinned: Pinned for offline access.
        is_folder: Item is a folder.
        previous_path: Old local path for MOVE items.
        not_before: Earliest time the item may be dequeued (retry backoff).
        bytes_transferred: Bytes moved so far in the current attempt.
    """

    local_path: str
    remote_path: str
    operation: SyncOperation
    file_id: str = ""
    status: SyncItemStatus = SyncItemStatus.PENDING
    source: ChangeSource = ChangeSource.LOCAL
    local_modified: float = 0.0
    remote_modified: float = 0.0
    size: int = 0
    version_tag: str = ""
    local_hash: str = ""
    remote_hash: str = ""
    retry_count: int = 0
    error_message: str = ""
    pinned: bool = False
    is_folder: bool = False
    previous_path: str = ""
    not_before: float = 0.0
    bytes_transferred: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        """Queue key: the remote identifier, or the local path for new items."""
        return self.file_id or f"path:{self.local_path}"

    @property
    def is_terminal(self) -> bool:
        """Check if the item reached a terminal status."""
        return not VALID_TRANSITIONS[self.status]

    def transition_to(self, new_status: SyncItemStatus) -> None:
        """Transition to a new status with validation."""
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot transition {self.local_path} from "
                f"{self.status.name} to {new_status.name}"
            )
        self.status = new_status

    def merge_from(self, other: SyncItem) -> None:
        """Coalesce a newer observation of the same item into this one.

        Only descriptive fields are copied; status, retry count and the
        operation in flight are left alone.
        """
        for name in MERGEABLE_FIELDS:
            value = getattr(other, name)
            if value:
                setattr(self, name, value)
        self.pinned = self.pinned or other.pinned
        if not self.file_id and other.file_id:
            self.file_id = other.file_id

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"SyncItem({self.operation.name}, {self.status.name}, "
            f"path={self.local_path!r}, id={self.file_id!r})"
        )


@dataclass
class SyncRecord:
    """Last known synced state of one item.

    Scanners diff against these records; the conflict detector compares
    against ``version_tag`` and ``synced_at``.
    """

    file_id: str
    local_path: str
    remote_path: str
    version_tag: str = ""
    content_hash: str = ""
    local_mtime: float = 0.0
    size: int = 0
    is_folder: bool = False
    synced_at: float = 0.0


@dataclass
class SyncStateSnapshot:
    """Engine state persisted between runs."""

    delta_token: str | None = None
    last_sync_time: float = 0.0
    records: list[SyncRecord] = field(default_factory=list)


@dataclass
class SyncStats:
    """Statistics for the current or last sync pass."""

    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    conflict_items: int = 0
    skipped_items: int = 0
    retries: int = 0
    bytes_uploaded: int = 0
    bytes_downloaded: int = 0
    start_time: float = 0.0
    end_time: float = 0.0

    def throughput(self, now: float | None = None) -> float:
        """Average throughput in KB/s over the pass."""
        if self.start_time <= 0:
            return 0.0
        end = self.end_time or (now if now is not None else time.time())
        elapsed = end - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_uploaded + self.bytes_downloaded) / elapsed / 1024.0


@dataclass
class ProgressEvent:
    """Progress notification for one status transition or transfer chunk."""

    item: SyncItem
    status: SyncItemStatus
    bytes_transferred: int
    total_bytes: int
    error: str = ""


@dataclass
class ConflictNotice:
    """Conflict notification sent to registered conflict handlers.

    Attributes:
        item: The conflicted item (held in CONFLICT state).
        choices: Resolution modes the handler may pick from.
        local_modified: Local mtime.
        remote_modified: Remote mtime.
    """

    item: SyncItem
    choices: list[str]
    local_modified: float
    remote_modified: float


@dataclass
class SyncCompleteEvent:
    """Sent when a sync pass has drained the queue."""

    total: int
    completed: int
    failed: int
    conflicts: int


# Type aliases for observer callbacks
ProgressCallback = Callable[[ProgressEvent], None]
ConflictCallback = Callable[[ConflictNotice], None]
CompletionCallback = Callable[[SyncCompleteEvent], None]
