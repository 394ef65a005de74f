"""Last known synced state.

This module provides:
- SyncState: Thread-safe index of SyncRecords by local path and file id,
  plus the remote delta token and the last completed pass time

Scanners diff against this state, the conflict detector compares against
it, and the processor updates it after every successful operation.
"""

from __future__ import annotations

import logging
import threading

from cloudsync.sync.types import SyncRecord, SyncStateSnapshot

logger = logging.getLogger(__name__)


class SyncState:
    """In-memory synced-state index, loaded from and saved to a snapshot."""

    def __init__(self, snapshot: SyncStateSnapshot | None = None) -> None:
        self._lock = threading.RLock()
        self._by_path: dict[str, SyncRecord] = {}
        self._by_id: dict[str, SyncRecord] = {}
        self.delta_token: str | None = None
        self.last_sync_time = 0.0
        if snapshot is not None:
            self.load(snapshot)

    def load(self, snapshot: SyncStateSnapshot) -> None:
        """Replace the state with ``snapshot``."""
        with self._lock:
            self._by_path.clear()
            self._by_id.clear()
            for record in snapshot.records:
                self._index(record)
            self.delta_token = snapshot.delta_token
            self.last_sync_time = snapshot.last_sync_time

    def snapshot(self) -> SyncStateSnapshot:
        """Copy of the state for persistence."""
        with self._lock:
            return SyncStateSnapshot(
                delta_token=self.delta_token,
                last_sync_time=self.last_sync_time,
                records=[
                    SyncRecord(**vars(r))
                    for r in sorted(self._by_path.values(), key=lambda r: r.local_path)
                ],
            )

    def get(self, local_path: str) -> SyncRecord | None:
        with self._lock:
            return self._by_path.get(local_path)

    def get_by_id(self, file_id: str) -> SyncRecord | None:
        with self._lock:
            return self._by_id.get(file_id) if file_id else None

    def records(self) -> list[SyncRecord]:
        with self._lock:
            return list(self._by_path.values())

    def put(self, record: SyncRecord) -> None:
        """Insert or replace the record for its local path and file id."""
        with self._lock:
            self._drop(self._by_path.get(record.local_path))
            if record.file_id:
                self._drop(self._by_id.get(record.file_id))
            self._index(record)

    def remove(self, local_path: str) -> SyncRecord | None:
        """Remove the record for ``local_path``, and any records below it."""
        with self._lock:
            record = self._by_path.get(local_path)
            self._drop(record)
            prefix = local_path.rstrip("/") + "/"
            for path in [p for p in self._by_path if p.startswith(prefix)]:
                self._drop(self._by_path[path])
            return record

    def remove_by_id(self, file_id: str) -> SyncRecord | None:
        with self._lock:
            record = self._by_id.get(file_id)
            if record is not None:
                return self.remove(record.local_path)
            return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_path)

    def _index(self, record: SyncRecord) -> None:
        self._by_path[record.local_path] = record
        if record.file_id:
            self._by_id[record.file_id] = record

    def _drop(self, record: SyncRecord | None) -> None:
        if record is None:
            return
        if self._by_path.get(record.local_path) is record:
            del self._by_path[record.local_path]
        if record.file_id and self._by_id.get(record.file_id) is record:
            del self._by_id[record.file_id]
