"""Work queue for sync items.

This module provides:
- SyncQueue: Thread-safe FIFO of SyncItems with per-key coalescing and
  delayed (backoff) re-admission

Ordering:
    Items are handed out in admission order. An item whose ``not_before``
    lies in the future is skipped until it becomes ready; the next ready
    item is served instead.

Coalescing:
    At most one item per key (file id, or local path for items that do not
    exist remotely yet) is queued or active. A later arrival for the same
    key, or for the same local path, updates the fields of the queued or
    active item instead of being queued separately.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloudsync.sync.types import SyncItem

logger = logging.getLogger(__name__)


class QueueClosedError(RuntimeError):
    """Raised when using a closed queue."""


class SyncQueue:
    """Thread-safe FIFO queue with key coalescing.

    Usage:
        queue = SyncQueue()
        queue.put(item)
        item = queue.get(timeout=0.1)  # item is now active
        ...
        queue.task_done(item)          # or queue.requeue(item) for a retry
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the queue.

        Args:
            clock: Time source used to compare against ``not_before``.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._seq = itertools.count()

        # key -> (admission sequence, item)
        self._pending: dict[str, tuple[int, SyncItem]] = {}
        # key -> item, plus id(item) -> key it was activated under
        self._active: dict[str, SyncItem] = {}
        self._active_keys: dict[int, str] = {}
        self._closed = False

    def put(self, item: SyncItem) -> bool:
        """Admit an item, or coalesce it into the queued/active one.

        Returns:
            True if the item was queued, False if it was merged into an
            existing item.

        Raises:
            QueueClosedError: If the queue is closed.
        """
        with self._lock:
            if self._closed:
                raise QueueClosedError("Queue is closed")

            active = self._find_active(item)
            if active is not None:
                active.merge_from(item)
                logger.debug("Coalesced %r into active item", item)
                return False

            key = self._find_pending_key(item)
            if key is not None:
                seq, queued = self._pending.pop(key)
                queued.merge_from(item)
                self._pending[queued.key] = (seq, queued)
                logger.debug("Coalesced %r into queued item", item)
                return False

            self._pending[item.key] = (next(self._seq), item)
            self._changed.notify_all()
            logger.debug("Queued %r (queue size: %d)", item, len(self._pending))
            return True

    def get(self, timeout: float | None = None) -> SyncItem | None:
        """Take the oldest ready item and mark it active.

        Blocks until an item is ready or the timeout expires.

        Args:
            timeout: Maximum seconds to wait (None = wait forever).

        Returns:
            The item, or None if nothing became ready in time.

        Raises:
            QueueClosedError: If the queue is closed while empty.
        """
        with self._changed:
            deadline = None if timeout is None else time.monotonic() + timeout

            while True:
                if self._closed and not self._pending:
                    raise QueueClosedError("Queue is closed")

                now = self._clock()
                ready = [
                    (seq, key) for key, (seq, item) in self._pending.items()
                    if item.not_before <= now
                ]
                if ready:
                    _, key = min(ready)
                    _, item = self._pending.pop(key)
                    self._active[key] = item
                    self._active_keys[id(item)] = key
                    logger.debug("Dequeued %r (queue size: %d)", item, len(self._pending))
                    return item

                wait = None
                if self._pending:
                    wait = min(i.not_before for _, i in self._pending.values()) - now
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._changed.wait(timeout=wait)

    def task_done(self, item: SyncItem) -> None:
        """Release an active item (completed, failed or held elsewhere)."""
        with self._lock:
            key = self._active_keys.pop(id(item), None)
            if key is not None:
                self._active.pop(key, None)
            self._changed.notify_all()

    def requeue(self, item: SyncItem) -> None:
        """Release an active item and admit it again (retry).

        The item goes to the back of the queue and is not handed out
        before its ``not_before`` time.
        """
        with self._lock:
            self.task_done(item)
            key = self._find_pending_key(item)
            if key is not None:
                # Keep the newer observation queued meanwhile
                _, queued = self._pending.pop(key)
                item.merge_from(queued)
            self._pending[item.key] = (next(self._seq), item)
            self._changed.notify_all()
            logger.debug("Requeued %r (not before %.3f)", item, item.not_before)

    def remove(self, key: str) -> SyncItem | None:
        """Drop a queued (not active) item by key."""
        with self._lock:
            entry = self._pending.pop(key, None)
            return entry[1] if entry else None

    def pending_items(self) -> list[SyncItem]:
        """Queued items in admission order (not removed)."""
        with self._lock:
            return [item for _, item in sorted(self._pending.values(), key=lambda e: e[0])]

    def active_items(self) -> list[SyncItem]:
        """Items currently held by a worker."""
        with self._lock:
            return list(self._active.values())

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active

    def is_idle(self) -> bool:
        """Check if nothing is queued or active."""
        with self._lock:
            return not self._pending and not self._active

    def clear(self) -> int:
        """Drop all queued items.

        Returns:
            Number of items dropped.
        """
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            logger.info("Cleared %d items from queue", count)
            return count

    def wake(self) -> None:
        """Wake up threads blocked in :meth:`get`."""
        with self._lock:
            self._changed.notify_all()

    def close(self) -> None:
        """Close the queue and wake up waiting threads."""
        with self._lock:
            self._closed = True
            self._changed.notify_all()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        """Number of queued (not active) items."""
        with self._lock:
            return len(self._pending)

    def _find_active(self, item: SyncItem) -> SyncItem | None:
        active = self._active.get(item.key)
        if active is not None:
            return active
        for candidate in self._active.values():
            if candidate.local_path == item.local_path:
                return candidate
        return None

    def _find_pending_key(self, item: SyncItem) -> str | None:
        if item.key in self._pending:
            return item.key
        for key, (_, candidate) in self._pending.items():
            if candidate.local_path == item.local_path:
                return key
        return None
