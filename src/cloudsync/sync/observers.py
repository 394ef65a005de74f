"""Callback registry for sync notifications.

This module provides:
- SyncObservers: Registers progress, conflict and completion callbacks and
  delivers notifications to each of them

A callback that raises is logged and does not stop delivery to the others
or the processing of the item.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloudsync.sync.types import (
        CompletionCallback,
        ConflictCallback,
        ConflictNotice,
        ProgressCallback,
        ProgressEvent,
        SyncCompleteEvent,
    )

logger = logging.getLogger(__name__)


class SyncObservers:
    """Thread-safe callback registry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._progress: list[ProgressCallback] = []
        self._conflict: list[ConflictCallback] = []
        self._complete: list[CompletionCallback] = []

    def add_progress(self, callback: ProgressCallback) -> None:
        with self._lock:
            self._progress.append(callback)

    def add_conflict(self, callback: ConflictCallback) -> None:
        with self._lock:
            self._conflict.append(callback)

    def add_complete(self, callback: CompletionCallback) -> None:
        with self._lock:
            self._complete.append(callback)

    def remove(self, callback: Callable[..., Any]) -> None:
        """Unregister a callback from every list it is in."""
        with self._lock:
            for callbacks in (self._progress, self._conflict, self._complete):
                if callback in callbacks:
                    callbacks.remove(callback)

    @property
    def has_conflict_handlers(self) -> bool:
        with self._lock:
            return bool(self._conflict)

    def notify_progress(self, event: ProgressEvent) -> None:
        with self._lock:
            callbacks = list(self._progress)
        self._deliver(callbacks, event)

    def notify_conflict(self, notice: ConflictNotice) -> None:
        with self._lock:
            callbacks = list(self._conflict)
        self._deliver(callbacks, notice)

    def notify_complete(self, event: SyncCompleteEvent) -> None:
        with self._lock:
            callbacks = list(self._complete)
        self._deliver(callbacks, event)

    @staticmethod
    def _deliver(callbacks: list[Callable[[Any], None]], payload: Any) -> None:
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Sync observer %r failed", callback)
