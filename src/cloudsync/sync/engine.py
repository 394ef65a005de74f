"""Sync engine: orchestrates scanners, queue, processor and cache.

This module provides:
- SyncEngine: Owns the configuration snapshot, the synced state, the queue
  and the processor; runs sync passes on demand or on a timer

A sync pass:
    1. Remote scan (delta since the stored token, or full enumeration)
    2. Local scan of the sync root
    3. Direction filtering, then admission to the queue
    4. Processing (worker thread, or drained synchronously by run_once)
    5. Once the queue is idle: store the new delta token and last sync
       time, persist the state, notify completion observers

Lifecycle:
    STOPPED --initialize--> IDLE --start--> IDLE/SYNCING
    IDLE/SYNCING --pause--> PAUSED --resume--> IDLE/SYNCING
    metered link with an unmetered-only policy --> OFFLINE
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cloudsync.core.config import NetworkClass, SyncConfig, SyncDirection
from cloudsync.core.errors import NotInitializedError
from cloudsync.core.types import EngineState
from cloudsync.sync.change_scanner import LocalChangeScanner, RemoteChangeScanner
from cloudsync.sync.filters import PathFilter
from cloudsync.sync.observers import SyncObservers
from cloudsync.sync.processor import SyncProcessor
from cloudsync.sync.queue import SyncQueue
from cloudsync.sync.state import SyncState
from cloudsync.sync.types import (
    ChangeSource,
    SyncCompleteEvent,
    SyncItem,
    SyncOperation,
    SyncStats,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloudsync.cache.persistence import MetadataStore
    from cloudsync.cache.store import CacheStore
    from cloudsync.core.config import ConflictMode
    from cloudsync.sync.throttle import BandwidthThrottle
    from cloudsync.sync.transport import Transport

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync"


class SyncEngine:
    """Reconciles a local folder with a remote namespace.

    Usage:
        engine = SyncEngine(sync_root, transport, cache, store=store)
        engine.initialize()
        engine.observers.add_progress(print)
        engine.start()          # worker + periodic passes
        ...
        engine.shutdown()

        # one synchronous pass
        stats = engine.run_once()
    """

    def __init__(
        self,
        sync_root: Path,
        transport: Transport,
        cache: CacheStore,
        store: MetadataStore | None = None,
        config: SyncConfig | None = None,
        observers: SyncObservers | None = None,
        throttle: BandwidthThrottle | None = None,
        clock: Callable[[], float] = time.time,
        is_metered: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            sync_root: Local folder kept in sync.
            transport: Remote transport.
            cache: Local file cache (initialized by :meth:`initialize` if needed).
            store: Persistence for the synced state.
            config: Initial configuration snapshot.
            observers: Callback registry (a new one if None).
            throttle: Bandwidth limiter (built from config if None).
            clock: Time source.
            is_metered: Reports whether the current link is metered.
        """
        self._root = Path(sync_root).resolve()
        self._transport = transport
        self._cache = cache
        self._store = store
        self._config = config or SyncConfig()
        self._observers = observers or SyncObservers()
        self._clock = clock
        self._is_metered = is_metered or (lambda: False)

        self._lock = threading.RLock()
        self._engine_state = EngineState.STOPPED
        self._initialized = False
        self._pass_open = False
        self._pending_token: str | None = None

        self._state = SyncState()
        self._queue = SyncQueue(clock=clock)
        self._filter = PathFilter.from_config(self._config)
        self._local_scanner = LocalChangeScanner(self._root, self._state, self._filter)
        self._remote_scanner = RemoteChangeScanner(
            transport, self._root, self._state, self._filter
        )
        self._processor = SyncProcessor(
            self._queue,
            transport,
            cache,
            self._state,
            self._root,
            self._config,
            observers=self._observers,
            throttle=throttle,
            clock=clock,
            transfer_allowed=self._network_allowed,
            on_idle=self._on_idle,
        )
        self._scheduler: BackgroundScheduler | None = None

    # === Properties ===

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def observers(self) -> SyncObservers:
        return self._observers

    @property
    def sync_state(self) -> SyncState:
        return self._state

    @property
    def state(self) -> EngineState:
        """Current lifecycle state."""
        with self._lock:
            if self._engine_state in (EngineState.IDLE, EngineState.SYNCING):
                if not self._network_allowed():
                    return EngineState.OFFLINE
            return self._engine_state

    @property
    def is_running(self) -> bool:
        return self._processor.is_running

    # === Lifecycle ===

    def initialize(self) -> None:
        """Prepare the cache and load the persisted synced state.

        Raises:
            ValueError: If the sync root is not a directory.
        """
        with self._lock:
            if self._initialized:
                return
            if not self._root.is_dir():
                raise ValueError(f"Sync root must be a directory: {self._root}")

            if not self._cache.is_initialized:
                self._cache.initialize()
            self._apply_cache_config()

            if self._store is not None:
                self._state.load(self._store.load_sync_state())

            self._initialized = True
            self._engine_state = EngineState.IDLE
            logger.info(
                "Sync engine initialized for %s (%d records)", self._root, len(self._state)
            )

    def shutdown(self) -> None:
        """Stop, persist everything and release the cache."""
        if not self._initialized:
            return
        self.stop()
        with self._lock:
            self._save_state()
            self._cache.shutdown()
            self._initialized = False
            logger.info("Sync engine shut down")

    def start(self) -> None:
        """Start the worker and the periodic sync timer, then sync once."""
        with self._lock:
            self._require_initialized()
            if self._scheduler is not None:
                logger.warning("Sync engine already running")
                return

            self._processor.start()
            self._scheduler = BackgroundScheduler()
            self._scheduler.add_job(
                self._scheduled_sync,
                trigger=IntervalTrigger(seconds=self._config.sync_interval),
                id=SYNC_JOB_ID,
                name="Periodic sync",
                replace_existing=True,
            )
            self._scheduler.start()
            self._engine_state = EngineState.IDLE
            logger.info("Sync engine started (interval: %ds)", self._config.sync_interval)

        self._scheduled_sync()

    def stop(self) -> None:
        """Stop the timer and the worker; queued items are kept."""
        with self._lock:
            scheduler = self._scheduler
            self._scheduler = None
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        # The worker may be waiting for the engine lock in its idle callback
        if self._processor.is_running:
            self._processor.stop()

        with self._lock:
            if self._initialized:
                self._save_state()
                self._engine_state = EngineState.STOPPED
            logger.info("Sync engine stopped")

    def pause(self) -> None:
        """Stop dequeuing and skip timer passes until resumed."""
        with self._lock:
            self._require_initialized()
            self._processor.pause()
            self._engine_state = EngineState.PAUSED

    def resume(self) -> None:
        """Continue from the same queue."""
        with self._lock:
            self._require_initialized()
            self._processor.resume()
            self._engine_state = EngineState.SYNCING if self._pass_open else EngineState.IDLE

    # === Sync passes ===

    def sync_now(self, full: bool = False) -> int:
        """Scan both sides and queue what changed.

        Args:
            full: Forget the delta token and enumerate the remote side fully.

        Returns:
            Number of items admitted to the queue.
        """
        with self._lock:
            self._require_initialized()
            if full:
                self._state.delta_token = None
            return self._scan()

    def run_once(self, full: bool = False, timeout: float | None = None) -> SyncStats:
        """Run one complete pass on the calling thread.

        When the worker is running the pass is only queued, and the returned
        statistics describe the work so far.

        Args:
            full: Enumerate the remote side fully.
            timeout: Give up draining after this many seconds.

        Returns:
            Statistics of the pass.
        """
        with self._lock:
            self._require_initialized()
            if self._processor.is_running:
                self.sync_now(full)
                return self.stats()
            self._processor.reset_stats()
            self.sync_now(full)

        self._processor.drain(timeout=timeout)
        self._finish_pass()
        return self.stats()

    def sync_path(self, path: Path, recursive: bool = True) -> int:
        """Force a sync of one file or folder.

        Local changes below ``path`` are queued. A tracked file without local
        changes is fetched again from the remote side.

        Returns:
            Number of items admitted to the queue.
        """
        with self._lock:
            self._require_initialized()
            path = Path(path).resolve()
            items = self._local_scanner.scan(path, recursive)
            if not items and path.is_file():
                record = self._state.get(str(path))
                if record is not None:
                    items.append(SyncItem(
                        local_path=record.local_path,
                        remote_path=record.remote_path,
                        operation=SyncOperation.UPDATE,
                        file_id=record.file_id,
                        source=ChangeSource.REMOTE,
                        size=record.size,
                        version_tag=record.version_tag,
                    ))
            return self._admit(items)

    def request_local_scan(self) -> int:
        """Queue local changes (used by the filesystem watcher)."""
        with self._lock:
            if not self._initialized or self._engine_state is EngineState.PAUSED:
                return 0
            if self._config.direction is SyncDirection.DOWNLOAD_ONLY:
                return 0
            return self._admit(self._local_scanner.scan())

    # === Configuration ===

    def set_config(self, config: SyncConfig) -> None:
        """Replace the configuration snapshot.

        Takes effect from the next item and the next scan; the periodic
        timer is rescheduled when the interval changed.
        """
        with self._lock:
            previous = self._config
            self._config = config
            self._filter = PathFilter.from_config(config)
            self._local_scanner = LocalChangeScanner(self._root, self._state, self._filter)
            self._remote_scanner = RemoteChangeScanner(
                self._transport, self._root, self._state, self._filter
            )
            self._processor.set_config(config)
            if self._cache.is_initialized:
                self._apply_cache_config()
            if self._scheduler is not None and config.sync_interval != previous.sync_interval:
                self._scheduler.reschedule_job(
                    SYNC_JOB_ID, trigger=IntervalTrigger(seconds=config.sync_interval)
                )
            logger.info("Sync configuration updated")

    # === Conflicts ===

    def pending_conflicts(self) -> list[SyncItem]:
        return self._processor.pending_conflicts()

    def resolve_conflict(self, key: str, mode: ConflictMode) -> None:
        """Apply a resolution to a conflict held in ASK mode."""
        self._processor.resolve_conflict(key, mode)

    def dismiss_conflict(self, key: str) -> None:
        """Leave a held conflict unresolved for good (item SKIPPED)."""
        self._processor.dismiss_conflict(key)

    # === Status ===

    def stats(self) -> SyncStats:
        """Statistics of the current or last pass."""
        return self._processor.stats()

    def queue_size(self) -> int:
        """Items queued or in progress."""
        return len(self._queue) + len(self._queue.active_items())

    # === Internals ===

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Sync engine is not initialized")

    def _network_allowed(self) -> bool:
        if self._config.network_class is NetworkClass.UNMETERED:
            return not self._is_metered()
        return True

    def _apply_cache_config(self) -> None:
        self._cache.set_max_size(self._config.cache_max_size)
        self._cache.set_eviction_policy(self._config.eviction_policy)

    def _scan(self) -> int:
        """Run both scanners and admit their items (lock held)."""
        if not self._network_allowed():
            logger.info("Skipping sync pass: metered network")
            return 0

        items: list[SyncItem] = []
        if self._config.direction is not SyncDirection.UPLOAD_ONLY:
            result = self._remote_scanner.scan(self._state.delta_token)
            self._pending_token = result.token
            items.extend(result.items)
        if self._config.direction is not SyncDirection.DOWNLOAD_ONLY:
            items.extend(self._local_scanner.scan())

        self._pass_open = True
        if self._engine_state is not EngineState.PAUSED:
            self._engine_state = EngineState.SYNCING
        admitted = self._admit(items)
        if admitted == 0 and self._queue.is_idle() and self._processor.is_running:
            self._finish_pass()
        return admitted

    def _admit(self, items: list[SyncItem]) -> int:
        admitted = 0
        for item in items:
            if not self._direction_allows(item):
                logger.debug("Dropping %r: direction is %s", item, self._config.direction.value)
                continue
            if self._processor.submit(item):
                admitted += 1
        if admitted:
            logger.info("Queued %d items", admitted)
        return admitted

    def _direction_allows(self, item: SyncItem) -> bool:
        direction = self._config.direction
        if direction is SyncDirection.DOWNLOAD_ONLY:
            return item.source is ChangeSource.REMOTE
        if direction is SyncDirection.UPLOAD_ONLY:
            return item.source is ChangeSource.LOCAL
        return True

    def _on_idle(self) -> None:
        with self._lock:
            if self._pass_open and self._queue.is_idle():
                self._finish_pass()

    def _finish_pass(self) -> None:
        with self._lock:
            if self._pending_token is not None:
                self._state.delta_token = self._pending_token
                self._pending_token = None
            self._state.last_sync_time = self._clock()
            self._pass_open = False
            if self._engine_state is EngineState.SYNCING:
                self._engine_state = EngineState.IDLE
            self._save_state()
            if self._cache.is_initialized:
                self._cache.flush()
            stats = self._processor.mark_finished()

        logger.info(
            "Sync pass complete: %d items, %d completed, %d failed, %d conflicts",
            stats.total_items,
            stats.completed_items,
            stats.failed_items,
            stats.conflict_items,
        )
        self._observers.notify_complete(SyncCompleteEvent(
            total=stats.total_items,
            completed=stats.completed_items,
            failed=stats.failed_items,
            conflicts=stats.conflict_items,
        ))

    def _save_state(self) -> None:
        if self._store is not None:
            self._store.save_sync_state(self._state.snapshot())

    def _scheduled_sync(self) -> None:
        """Job function for the periodic sync timer."""
        with self._lock:
            if self._engine_state is EngineState.PAUSED:
                logger.debug("Skipping scheduled sync: paused")
                return
            if self._pass_open:
                logger.debug("Skipping scheduled sync: pass still running")
                return
            self._processor.reset_stats()
        try:
            self.sync_now()
        except Exception:
            logger.exception("Error during scheduled sync")
