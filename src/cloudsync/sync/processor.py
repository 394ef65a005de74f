"""Sync processor: executes queued items.

This module provides:
- SyncProcessor: Takes items from the SyncQueue, dispatches them to the
  per-operation handler, applies retries with backoff, resolves or holds
  conflicts, and reports progress

Handlers:
    | Operation     | LOCAL source                 | REMOTE source               |
    |---------------|------------------------------|-----------------------------|
    | UPLOAD        | transport.upload             | -                           |
    | DOWNLOAD      | -                            | cache hit or transport      |
    | UPDATE        | conflict check, then upload or download                    |
    | DELETE        | transport.delete             | local delete                |
    | MOVE          | transport.move               | local rename, then UPDATE   |
    |               |                              | if the content changed      |
    | CREATE_FOLDER | transport.create_folder      | local mkdir                 |
    | CONFLICT      | resolved by conflict mode                                  |

Failure handling:
    A retryable failure moves the item ERROR -> PENDING and requeues it with
    ``not_before`` set to the backoff delay, until ``max_retries`` retries
    were scheduled. After that, or on a non-retryable failure, the item ends
    in ERROR. An item therefore runs at most ``max_retries + 1`` times.

Threading:
    One worker thread drains the queue. ``stop`` and ``pause`` are checked
    between items, never in the middle of a transfer.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cloudsync.core.config import ConflictMode, SyncConfig
from cloudsync.core.errors import (
    ChecksumMismatchError,
    EntryNotFoundError,
    RemoteNotFoundError,
)
from cloudsync.core.hashing import compute_file_hash
from cloudsync.sync.conflict import RESOLUTION_CHOICES, ConflictDetector, ConflictResolver
from cloudsync.sync.observers import SyncObservers
from cloudsync.sync.queue import QueueClosedError
from cloudsync.sync.retry import RetryPolicy
from cloudsync.sync.throttle import BandwidthThrottle
from cloudsync.sync.types import (
    ChangeSource,
    ConflictNotice,
    ProgressEvent,
    SyncItem,
    SyncItemStatus,
    SyncOperation,
    SyncRecord,
    SyncStats,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from cloudsync.cache.store import CacheStore
    from cloudsync.sync.queue import SyncQueue
    from cloudsync.sync.state import SyncState
    from cloudsync.sync.transport import Transport

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class SyncProcessor:
    """Executes SyncItems taken from a SyncQueue.

    Usage:
        processor = SyncProcessor(queue, transport, cache, state, sync_root, config)
        processor.submit(item)
        processor.start()      # background worker
        ...
        processor.stop()

        # or synchronously
        processor.drain()
    """

    def __init__(
        self,
        queue: SyncQueue,
        transport: Transport,
        cache: CacheStore,
        state: SyncState,
        sync_root: Path,
        config: SyncConfig,
        observers: SyncObservers | None = None,
        throttle: BandwidthThrottle | None = None,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], float] = time.time,
        transfer_allowed: Callable[[], bool] | None = None,
        on_idle: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            queue: Queue to take items from.
            transport: Remote transport.
            cache: Local file cache.
            state: Last known synced state, updated after each success.
            sync_root: Local folder kept in sync.
            config: Sync configuration snapshot.
            observers: Callback registry for notifications.
            throttle: Bandwidth limiter (built from config if None).
            resolver: Conflict resolver (built from transport if None).
            clock: Time source for backoff and records.
            transfer_allowed: Returns False while transfers must wait
                (e.g. metered network with an unmetered-only policy).
            on_idle: Called by the worker when the queue runs empty.
        """
        self._queue = queue
        self._transport = transport
        self._cache = cache
        self._state = state
        self._root = Path(sync_root).resolve()
        self._observers = observers or SyncObservers()
        self._throttle = throttle or BandwidthThrottle(config.bandwidth_limit)
        self._detector = ConflictDetector()
        self._resolver = resolver or ConflictResolver(transport, self._root)
        self._clock = clock
        self._transfer_allowed = transfer_allowed or (lambda: True)
        self._on_idle = on_idle

        self._config = config
        self._retry = RetryPolicy.from_config(config)

        self._lock = threading.RLock()
        self._stats = SyncStats()
        self._conflicts: dict[str, SyncItem] = {}

        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._thread: threading.Thread | None = None

    # === Configuration and state ===

    @property
    def config(self) -> SyncConfig:
        return self._config

    def set_config(self, config: SyncConfig) -> None:
        """Swap the configuration snapshot. Applies from the next item on."""
        with self._lock:
            self._config = config
            self._retry = RetryPolicy.from_config(config)
            self._throttle.set_limit(config.bandwidth_limit)

    def stats(self) -> SyncStats:
        """Copy of the current statistics."""
        with self._lock:
            return SyncStats(**vars(self._stats))

    def reset_stats(self) -> None:
        """Start a new statistics period."""
        with self._lock:
            self._stats = SyncStats(start_time=self._clock())

    def mark_finished(self) -> SyncStats:
        """Close the current statistics period and return it."""
        with self._lock:
            self._stats.end_time = self._clock()
            return SyncStats(**vars(self._stats))

    def pending_conflicts(self) -> list[SyncItem]:
        """Conflicted items waiting for a decision."""
        with self._lock:
            return list(self._conflicts.values())

    # === Worker lifecycle ===

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_paused(self) -> bool:
        return not self._resume_event.is_set()

    def start(self) -> None:
        """Start the worker thread."""
        with self._lock:
            if self.is_running:
                logger.warning("Processor already running")
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="SyncProcessor",
                daemon=True,
            )
            self._thread.start()
            logger.info("Processor started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker after the item in progress.

        Args:
            timeout: Maximum time to wait for the thread to stop.
        """
        with self._lock:
            thread = self._thread
            self._thread = None
        self._stop_event.set()
        self._resume_event.set()
        self._queue.wake()
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Processor thread did not stop in time")
            else:
                logger.info("Processor stopped")

    def pause(self) -> None:
        """Stop taking new items; queued items are kept."""
        self._resume_event.clear()
        logger.info("Processor paused")

    def resume(self) -> None:
        """Continue taking items from the queue."""
        self._resume_event.set()
        self._queue.wake()
        logger.info("Processor resumed")

    def _run(self) -> None:
        """Main processing loop."""
        logger.debug("Processor loop started")
        while not self._stop_event.is_set():
            if not self._resume_event.is_set():
                self._resume_event.wait(timeout=0.1)
                continue
            if not self._transfer_allowed():
                self._stop_event.wait(timeout=0.5)
                continue

            try:
                item = self._queue.get(timeout=0.1)
            except QueueClosedError:
                break
            if item is None:
                continue

            try:
                self.process(item)
            except Exception:
                logger.exception("Unexpected error processing %r", item)
                self._queue.task_done(item)

            if self._on_idle is not None and self._queue.is_idle():
                try:
                    self._on_idle()
                except Exception:
                    logger.exception("Idle callback failed")
        logger.debug("Processor loop stopped")

    def drain(self, timeout: float | None = None) -> int:
        """Process items on the calling thread until the queue is idle.

        Items waiting on a retry backoff are waited for.

        Args:
            timeout: Give up after this many seconds (None = no limit).

        Returns:
            Number of items processed (retries count separately).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        processed = 0
        while not self._queue.is_idle():
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Drain timed out with %d items queued", len(self._queue))
                break
            item = self._queue.get(timeout=0.1)
            if item is None:
                continue
            self.process(item)
            processed += 1
        return processed

    # === Item admission ===

    def submit(self, item: SyncItem) -> bool:
        """Admit a new item to the queue.

        Returns:
            True if queued, False if coalesced into an existing item.
        """
        queued = self._queue.put(item)
        if queued:
            with self._lock:
                self._stats.total_items += 1
            self._notify(item)
        return queued

    # === Processing ===

    def process(self, item: SyncItem) -> None:
        """Run one dequeued item to its next status.

        The item must have been taken from the queue (it is active there).
        """
        with self._lock:
            held = self._conflicts.get(item.key)
        if held is not None and held is not item:
            # A decision is pending for this key; fold the new observation in
            held.merge_from(item)
            item.transition_to(SyncItemStatus.SKIPPED)
            self._count("skipped_items")
            self._notify(item)
            self._queue.task_done(item)
            return

        item.transition_to(SyncItemStatus.IN_PROGRESS)
        item.bytes_transferred = 0
        self._notify(item)

        try:
            outcome = self._dispatch(item)
        except Exception as e:
            self._handle_failure(item, e)
            return

        if outcome is SyncItemStatus.CONFLICT:
            self._handle_conflict(item)
            return

        item.transition_to(outcome)
        item.error_message = ""
        self._count("completed_items" if outcome is SyncItemStatus.COMPLETED else "skipped_items")
        logger.debug("%s %r", outcome.name.capitalize(), item)
        self._notify(item)
        self._queue.task_done(item)

    def _dispatch(self, item: SyncItem) -> SyncItemStatus:
        handlers = {
            SyncOperation.UPLOAD: self._handle_upload,
            SyncOperation.DOWNLOAD: self._handle_download,
            SyncOperation.UPDATE: self._handle_update,
            SyncOperation.DELETE: self._handle_delete,
            SyncOperation.MOVE: self._handle_move,
            SyncOperation.CREATE_FOLDER: self._handle_create_folder,
            SyncOperation.CONFLICT: self._handle_conflict_op,
        }
        return handlers[item.operation](item)

    def _handle_failure(self, item: SyncItem, error: Exception) -> None:
        message = str(error) or type(error).__name__
        item.error_message = message
        item.transition_to(SyncItemStatus.ERROR)

        with self._lock:
            retry = self._retry.should_retry(error, item.retry_count)
            if retry:
                item.retry_count += 1
                delay = self._retry.delay(item.retry_count)
                self._stats.retries += 1
            else:
                self._stats.failed_items += 1

        if retry:
            item.not_before = self._clock() + delay
            item.transition_to(SyncItemStatus.PENDING)
            logger.warning(
                "Attempt %d/%d for %s failed: %s. Retrying in %.1fs",
                item.retry_count,
                self._retry.max_retries + 1,
                item.local_path,
                message,
                delay,
            )
            self._notify(item)
            self._queue.requeue(item)
        else:
            logger.error("Sync of %s failed: %s", item.local_path, message)
            self._notify(item, error=message)
            self._queue.task_done(item)

    # === Conflicts ===

    def _handle_conflict(self, item: SyncItem) -> None:
        item.transition_to(SyncItemStatus.CONFLICT)
        self._count("conflict_items")
        logger.warning("Conflict on %s", item.local_path)
        self._notify(item)

        mode = self._config.conflict_mode
        if mode is ConflictMode.ASK:
            with self._lock:
                self._conflicts[item.key] = item
            self._queue.task_done(item)
            self._observers.notify_conflict(ConflictNotice(
                item=item,
                choices=list(RESOLUTION_CHOICES),
                local_modified=item.local_modified,
                remote_modified=item.remote_modified,
            ))
            return

        self._queue.task_done(item)
        self._apply_resolution(item, mode)

    def resolve_conflict(self, key: str, mode: ConflictMode) -> None:
        """Apply a decision to a held conflict.

        Raises:
            EntryNotFoundError: If no conflict is held for ``key``.
            ValueError: If mode is ASK.
        """
        if mode is ConflictMode.ASK:
            raise ValueError("ASK is not a resolution")
        with self._lock:
            item = self._conflicts.pop(key, None)
        if item is None:
            raise EntryNotFoundError(f"No pending conflict: {key}")
        self._apply_resolution(item, mode)

    def dismiss_conflict(self, key: str) -> None:
        """Give up on a held conflict; the item ends SKIPPED.

        Raises:
            EntryNotFoundError: If no conflict is held for ``key``.
        """
        with self._lock:
            item = self._conflicts.pop(key, None)
        if item is None:
            raise EntryNotFoundError(f"No pending conflict: {key}")
        item.transition_to(SyncItemStatus.SKIPPED)
        self._count("skipped_items")
        self._notify(item)

    def _apply_resolution(self, item: SyncItem, mode: ConflictMode) -> None:
        try:
            items = self._resolver.resolve(item, mode)
        except Exception as e:
            # Keep the conflict for a later decision
            item.error_message = str(e) or type(e).__name__
            logger.error("Resolving conflict on %s failed: %s", item.local_path, e)
            with self._lock:
                self._conflicts[item.key] = item
            self._notify(item, error=item.error_message)
            return

        item.transition_to(SyncItemStatus.PENDING)
        item.not_before = 0.0
        self._notify(item)
        self._queue.requeue(item)
        for extra in items:
            if extra is not item:
                self.submit(extra)

    # === Handlers ===

    def _handle_upload(self, item: SyncItem) -> SyncItemStatus:
        path = Path(item.local_path)
        if not path.is_file():
            logger.info("Skipping upload of %s: file no longer exists", path)
            return SyncItemStatus.SKIPPED

        digest = hashlib.sha256()
        size = path.stat().st_size
        entry = self._transport.upload(
            item.remote_path,
            self._read_chunks(item, path, size, digest),
            file_id=item.file_id,
        )
        local_hash = digest.hexdigest()
        if entry.content_hash and entry.content_hash != local_hash:
            raise ChecksumMismatchError(item.remote_path, local_hash, entry.content_hash)

        item.file_id = entry.file_id
        item.version_tag = entry.version_tag
        item.local_hash = local_hash
        item.remote_hash = local_hash
        self._place_in_cache(item, path)
        self._record(item, path)
        logger.info("Uploaded %s", item.remote_path)
        return SyncItemStatus.COMPLETED

    def _handle_download(self, item: SyncItem) -> SyncItemStatus:
        self._refresh_local(item)
        if self._detector.is_conflict(item, self._state.get_by_id(item.file_id)):
            return SyncItemStatus.CONFLICT
        self._download(item)
        return SyncItemStatus.COMPLETED

    def _handle_update(self, item: SyncItem) -> SyncItemStatus:
        self._refresh_local(item)
        record = self._state.get_by_id(item.file_id) or self._state.get(item.local_path)
        if self._detector.is_conflict(item, record):
            return SyncItemStatus.CONFLICT

        remote_changed = bool(item.version_tag) and (
            record is None or item.version_tag != record.version_tag
        )
        local_changed = bool(item.local_hash) and (
            record is None or item.local_hash != record.content_hash
        )

        if remote_changed and local_changed and item.local_hash == item.remote_hash:
            # Same content on both sides: only the record is stale
            self._record(item, Path(item.local_path))
            return SyncItemStatus.COMPLETED

        if remote_changed and not local_changed:
            upload = False
        elif local_changed and not remote_changed:
            upload = True
        else:
            upload = item.source is ChangeSource.LOCAL

        if upload:
            return self._handle_upload(item)
        self._download(item)
        return SyncItemStatus.COMPLETED

    def _handle_delete(self, item: SyncItem) -> SyncItemStatus:
        if item.source is ChangeSource.LOCAL:
            if item.file_id:
                try:
                    self._transport.delete(item.file_id)
                except RemoteNotFoundError:
                    logger.debug("Remote %s already gone", item.remote_path)
        else:
            path = Path(item.local_path)
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()

        for record in self._records_under(item.local_path):
            self._cache.forget(record.file_id)
        if item.file_id:
            self._cache.forget(item.file_id)
        self._state.remove(item.local_path)
        logger.info("Deleted %s (%s side)", item.local_path, item.source.name.lower())
        return SyncItemStatus.COMPLETED

    def _handle_move(self, item: SyncItem) -> SyncItemStatus:
        old_local = item.previous_path
        record = self._state.get_by_id(item.file_id) or self._state.get(old_local)
        new_path = Path(item.local_path)

        if item.source is ChangeSource.LOCAL:
            entry = self._transport.move(item.file_id, item.remote_path)
            item.version_tag = entry.version_tag
        else:
            old_path = Path(old_local)
            if old_path.exists():
                new_path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(old_path, new_path)
            elif not item.is_folder:
                self._download(item)
                self._repath_records(old_local, item)
                return SyncItemStatus.COMPLETED
            elif not new_path.exists():
                new_path.mkdir(parents=True)

        self._repath_records(old_local, item)
        if self._cache.is_cached(item.file_id):
            self._cache.update_entry(item.file_id, original_path=item.local_path)
        logger.info("Moved %s -> %s", old_local, item.local_path)

        if item.is_folder:
            return SyncItemStatus.COMPLETED
        if item.source is ChangeSource.LOCAL or record is None:
            self._record(item, new_path, base=record)
            return SyncItemStatus.COMPLETED

        # Keep the synced baseline so a local edit carried by the rename
        # is still seen as a change
        self._state.put(replace(record, local_path=item.local_path, remote_path=item.remote_path))
        if item.version_tag and item.version_tag != record.version_tag:
            return self._update_moved(item, record)
        return SyncItemStatus.COMPLETED

    def _update_moved(self, item: SyncItem, record: SyncRecord) -> SyncItemStatus:
        """Bring in the new content of a file that was moved and changed remotely."""
        item.operation = SyncOperation.UPDATE
        item.previous_path = ""
        self._refresh_local(item)
        if self._detector.is_conflict(item, record):
            return SyncItemStatus.CONFLICT
        self._download(item)
        return SyncItemStatus.COMPLETED

    def _handle_create_folder(self, item: SyncItem) -> SyncItemStatus:
        path = Path(item.local_path)
        if item.source is ChangeSource.LOCAL:
            entry = self._transport.create_folder(item.remote_path)
            item.file_id = entry.file_id
            item.version_tag = entry.version_tag
        else:
            path.mkdir(parents=True, exist_ok=True)
        item.is_folder = True
        self._record(item, path)
        return SyncItemStatus.COMPLETED

    def _handle_conflict_op(self, item: SyncItem) -> SyncItemStatus:
        self._refresh_local(item)
        return SyncItemStatus.CONFLICT

    # === Transfers ===

    def _download(self, item: SyncItem) -> None:
        target = Path(item.local_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")

        if self._serve_from_cache(item, target, tmp):
            return

        digest = hashlib.sha256()
        try:
            with open(tmp, "wb") as f:
                for chunk in self._transport.download(item.file_id):
                    self._throttle.acquire(len(chunk))
                    f.write(chunk)
                    digest.update(chunk)
                    item.bytes_transferred += len(chunk)
                    with self._lock:
                        self._stats.bytes_downloaded += len(chunk)
                    self._notify(item)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        actual = digest.hexdigest()
        if item.remote_hash and actual != item.remote_hash:
            tmp.unlink(missing_ok=True)
            raise ChecksumMismatchError(item.remote_path, item.remote_hash, actual)

        os.replace(tmp, target)
        item.local_hash = actual
        item.remote_hash = actual
        self._place_in_cache(item, target)
        self._record(item, target)
        logger.info("Downloaded %s", item.remote_path)

    def _serve_from_cache(self, item: SyncItem, target: Path, tmp: Path) -> bool:
        if not item.version_tag or not self._cache.is_cached(item.file_id):
            return False
        entry = self._cache.get_entry(item.file_id)
        if entry.version_tag != item.version_tag:
            return False

        cached = self._cache.get(item.file_id)
        if cached is None:
            return False
        shutil.copyfile(cached, tmp)
        os.replace(tmp, target)
        item.local_hash = entry.checksum
        item.remote_hash = entry.checksum
        if self._cache.is_folder_pinned(item.local_path) or item.pinned:
            self._cache.pin(item.file_id)
        if entry.original_path != item.local_path:
            self._cache.update_entry(item.file_id, original_path=item.local_path)
        self._record(item, target)
        logger.info("Restored %s from cache", item.local_path)
        return True

    def _read_chunks(
        self,
        item: SyncItem,
        path: Path,
        size: int,
        digest: Any,
    ) -> Iterator[bytes]:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                self._throttle.acquire(len(chunk))
                digest.update(chunk)
                item.bytes_transferred += len(chunk)
                with self._lock:
                    self._stats.bytes_uploaded += len(chunk)
                self._notify(item, total=size)
                yield chunk

    # === Cache and records ===

    def _is_pinned(self, item: SyncItem) -> bool:
        if item.pinned or self._cache.is_folder_pinned(item.local_path):
            return True
        if item.file_id and self._cache.is_cached(item.file_id):
            return self._cache.get_entry(item.file_id).pinned
        return False

    def _place_in_cache(self, item: SyncItem, path: Path) -> None:
        """Keep pinned content resident and refresh stale cached copies."""
        pinned = self._is_pinned(item)
        if pinned or self._cache.is_cached(item.file_id):
            self._cache.put(
                item.file_id,
                path,
                item.local_path,
                pinned=pinned,
                version_tag=item.version_tag,
            )

    def _record(self, item: SyncItem, path: Path, base: SyncRecord | None = None) -> None:
        stat = path.stat() if path.exists() else None
        content_hash = item.local_hash or (base.content_hash if base else "")
        self._state.put(SyncRecord(
            file_id=item.file_id,
            local_path=item.local_path,
            remote_path=item.remote_path,
            version_tag=item.version_tag or (base.version_tag if base else ""),
            content_hash="" if item.is_folder else content_hash,
            local_mtime=stat.st_mtime if stat else 0.0,
            size=stat.st_size if stat and not item.is_folder else 0,
            is_folder=item.is_folder,
            synced_at=self._clock(),
        ))

    def _records_under(self, local_path: str) -> list[SyncRecord]:
        prefix = local_path.rstrip(os.sep) + os.sep
        return [r for r in self._state.records() if r.local_path.startswith(prefix)]

    def _repath_records(self, old_local: str, item: SyncItem) -> None:
        """Move the records of ``old_local`` (and below) to the item's path."""
        children = self._records_under(old_local)
        self._state.remove(old_local)
        if item.is_folder:
            self._record(item, Path(item.local_path))
        old_prefix = old_local.rstrip(os.sep) + os.sep
        new_prefix = item.local_path.rstrip(os.sep) + os.sep
        remote_prefix = item.remote_path.rstrip("/") + "/"
        for child in children:
            rel = child.local_path[len(old_prefix):]
            child.local_path = new_prefix + rel
            child.remote_path = remote_prefix + rel.replace(os.sep, "/")
            self._state.put(child)
            if self._cache.is_cached(child.file_id):
                self._cache.update_entry(child.file_id, original_path=child.local_path)

    def _refresh_local(self, item: SyncItem) -> None:
        """Describe the local file as it is on disk right now."""
        path = Path(item.local_path)
        if not path.is_file():
            item.local_modified = 0.0
            item.local_hash = ""
            return
        stat = path.stat()
        record = self._state.get(item.local_path)
        item.local_modified = stat.st_mtime
        if record is not None and (stat.st_mtime, stat.st_size) == (record.local_mtime, record.size):
            item.local_hash = record.content_hash
        else:
            item.local_hash = compute_file_hash(path)

    # === Helpers ===

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)

    def _notify(self, item: SyncItem, error: str = "", total: int | None = None) -> None:
        self._observers.notify_progress(ProgressEvent(
            item=item,
            status=item.status,
            bytes_transferred=item.bytes_transferred,
            total_bytes=item.size if total is None else total,
            error=error,
        ))
