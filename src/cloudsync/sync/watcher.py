"""File system watcher with debouncing for sync detection.

This module provides:
- FileWatcher: Watches the sync root using watchdog
- DebouncedEventHandler: Collects events and fires once the folder has
  been quiet for ``sync_delay_s``

The watcher does not build SyncItems itself: a burst of events only asks
the engine for a local scan, which diffs the folder against the synced
state.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from cloudsync.sync.filters import PathFilter

logger = logging.getLogger(__name__)


class ChangeType(Enum):
    """Type of file system change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


@dataclass
class FileChange:
    """A file system change event."""

    path: Path
    change_type: ChangeType
    is_directory: bool
    timestamp: float = field(default_factory=time.time)
    dest_path: Path | None = None  # For MOVED events


def _decode(path: str | bytes) -> Path:
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path)


class DebouncedEventHandler(FileSystemEventHandler):
    """Event handler that debounces rapid file system events."""

    def __init__(
        self,
        base_path: Path,
        on_changes: Callable[[list[FileChange]], None],
        sync_delay_s: float = 3.0,
        path_filter: PathFilter | None = None,
    ) -> None:
        """Initialize the debounced handler.

        Args:
            base_path: Base directory being watched.
            on_changes: Callback when changes are ready to sync.
            sync_delay_s: Quiet period after the last event before firing.
            path_filter: Filter for paths that are never synced.
        """
        super().__init__()
        self._base_path = base_path
        self._on_changes = on_changes
        self._sync_delay_s = sync_delay_s
        self._filter = path_filter

        # Pending changes keyed by path
        self._pending: dict[str, FileChange] = {}
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def set_filter(self, path_filter: PathFilter) -> None:
        self._filter = path_filter

    def _ignored(self, path: Path, is_directory: bool) -> bool:
        if self._filter is None:
            return False
        try:
            rel = path.relative_to(self._base_path).as_posix()
        except ValueError:
            return True
        if rel == ".":
            return True
        return not self._filter.accepts(rel, is_directory)

    def _schedule_flush(self) -> None:
        """Restart the quiet-period timer (lock held)."""
        if self._timer:
            self._timer.cancel()
        self._timer = threading.Timer(self._sync_delay_s, self._flush_changes)
        self._timer.daemon = True
        self._timer.start()

    def _flush_changes(self) -> None:
        with self._lock:
            if not self._pending:
                return
            changes = list(self._pending.values())
            self._pending.clear()
            self._timer = None

        # Call callback outside lock
        try:
            self._on_changes(changes)
        except Exception:
            logger.exception("Error handling %d file changes", len(changes))

    def _handle_event(self, event: FileSystemEvent) -> None:
        if isinstance(event, (FileCreatedEvent, DirCreatedEvent)):
            change_type = ChangeType.CREATED
        elif isinstance(event, (FileModifiedEvent, DirModifiedEvent)):
            change_type = ChangeType.MODIFIED
        elif isinstance(event, (FileDeletedEvent, DirDeletedEvent)):
            change_type = ChangeType.DELETED
        elif isinstance(event, (FileMovedEvent, DirMovedEvent)):
            change_type = ChangeType.MOVED
        else:
            return

        path = _decode(event.src_path)
        dest_path = None
        if change_type is ChangeType.MOVED:
            dest_path = _decode(event.dest_path)

        if self._ignored(path, event.is_directory) and (
            dest_path is None or self._ignored(dest_path, event.is_directory)
        ):
            return

        # Directory mtime changes follow from their children
        if change_type is ChangeType.MODIFIED and event.is_directory:
            return

        change = FileChange(
            path=path,
            change_type=change_type,
            is_directory=event.is_directory,
            dest_path=dest_path,
        )
        with self._lock:
            self._pending[str(path)] = change
            self._schedule_flush()

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle_event(event)

    def stop(self) -> None:
        """Cancel the pending timer (pending changes are dropped)."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()


class FileWatcher:
    """Watches a directory for file changes with debouncing.

    Usage:
        with FileWatcher(root, lambda changes: engine.request_local_scan()):
            ...
    """

    def __init__(
        self,
        watch_path: Path,
        on_changes: Callable[[list[FileChange]], None],
        sync_delay_s: float = 3.0,
        path_filter: PathFilter | None = None,
    ) -> None:
        """Initialize the file watcher.

        Args:
            watch_path: Directory to watch.
            on_changes: Callback when changes are ready to sync.
            sync_delay_s: Quiet period after the last event before firing.
            path_filter: Filter for paths that are never synced.

        Raises:
            ValueError: If watch_path is not a directory.
        """
        self._watch_path = Path(watch_path).resolve()
        if not self._watch_path.is_dir():
            raise ValueError(f"Watch path must be a directory: {watch_path}")

        self._handler = DebouncedEventHandler(
            base_path=self._watch_path,
            on_changes=on_changes,
            sync_delay_s=sync_delay_s,
            path_filter=path_filter,
        )
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def watch_path(self) -> Path:
        return self._watch_path

    @property
    def handler(self) -> DebouncedEventHandler:
        return self._handler

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return
        self._observer.schedule(self._handler, str(self._watch_path), recursive=True)
        self._observer.start()
        self._running = True
        logger.info("Watching %s", self._watch_path)

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return
        self._handler.stop()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False
        logger.info("Stopped watching %s", self._watch_path)

    def __enter__(self) -> FileWatcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
