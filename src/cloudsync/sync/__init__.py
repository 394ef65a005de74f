"""Bidirectional sync between a local folder and a remote namespace.

Architecture:
    Scanners → SyncEngine → SyncQueue → SyncProcessor → Transport

Components:
- **LocalChangeScanner / RemoteChangeScanner**: Diff each side against the
  last synced state (SyncState) and produce SyncItems
- **SyncQueue**: Thread-safe FIFO with per-key coalescing and retry backoff
- **SyncProcessor**: Executes items, detects and resolves conflicts
- **SyncEngine**: Owns the configuration, runs passes on demand or on a timer
- **FileWatcher**: Triggers local scans on file system events
- **Transport**: Remote storage contract (FolderTransport for a mounted share)
"""

from cloudsync.sync.change_scanner import (
    LocalChangeScanner,
    RemoteChangeScanner,
    RemoteScanResult,
)
from cloudsync.sync.conflict import (
    ConflictDetector,
    ConflictResolver,
    generate_conflict_filename,
    get_machine_name,
    merge_text,
)
from cloudsync.sync.engine import SyncEngine
from cloudsync.sync.filters import PathFilter
from cloudsync.sync.observers import SyncObservers
from cloudsync.sync.processor import SyncProcessor
from cloudsync.sync.queue import QueueClosedError, SyncQueue
from cloudsync.sync.retry import RetryPolicy, compute_backoff
from cloudsync.sync.state import SyncState
from cloudsync.sync.throttle import BandwidthThrottle
from cloudsync.sync.transport import (
    DeltaResult,
    FolderTransport,
    RemoteChange,
    RemoteEntry,
    Transport,
)
from cloudsync.sync.types import (
    ChangeSource,
    CompletionCallback,
    ConflictCallback,
    ConflictNotice,
    ProgressCallback,
    ProgressEvent,
    SyncCompleteEvent,
    SyncItem,
    SyncItemStatus,
    SyncOperation,
    SyncRecord,
    SyncStateSnapshot,
    SyncStats,
)
from cloudsync.sync.watcher import ChangeType, FileChange, FileWatcher

__all__ = [
    # Types and dataclasses
    "ChangeSource",
    "CompletionCallback",
    "ConflictCallback",
    "ConflictNotice",
    "ProgressCallback",
    "ProgressEvent",
    "SyncCompleteEvent",
    "SyncItem",
    "SyncItemStatus",
    "SyncOperation",
    "SyncRecord",
    "SyncStateSnapshot",
    "SyncStats",
    # Scanning
    "LocalChangeScanner",
    "PathFilter",
    "RemoteChangeScanner",
    "RemoteScanResult",
    "SyncState",
    # Queue & processing
    "BandwidthThrottle",
    "QueueClosedError",
    "RetryPolicy",
    "SyncEngine",
    "SyncObservers",
    "SyncProcessor",
    "SyncQueue",
    "compute_backoff",
    # Conflicts
    "ConflictDetector",
    "ConflictResolver",
    "generate_conflict_filename",
    "get_machine_name",
    "merge_text",
    # Transport
    "DeltaResult",
    "FolderTransport",
    "RemoteChange",
    "RemoteEntry",
    "Transport",
    # Watcher
    "ChangeType",
    "FileChange",
    "FileWatcher",
]
