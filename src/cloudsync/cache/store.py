"""Local file cache with pinning and policy-driven eviction.

This module provides:
- CacheEntry: Residency record of one cached file
- CacheStats: Aggregate counters (sizes, pins, hit/miss)
- CacheStore: Owns cached copies on disk and their metadata

Invariants:
    - The sum of entry sizes always equals the tracked current size.
    - A pinned entry, or one whose original path is under a pinned folder,
      is never evicted by policy.

Thread safety:
    One RLock guards the entry map, the pinned-folder list and the counters.
    Every public method holds it for its whole duration.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cloudsync.cache.eviction import EvictionPolicyEngine, EvictionResult
from cloudsync.core.config import DEFAULT_CACHE_MAX_SIZE, EvictionPolicy
from cloudsync.core.errors import EntryNotFoundError, NotAllowedError, NotInitializedError
from cloudsync.core.hashing import compute_file_hash

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloudsync.cache.persistence import MetadataStore

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Residency record of one cached file.

    Attributes:
        file_id: Stable remote identifier.
        cache_path: Path of the cached copy.
        original_path: Path of the file in the synced (virtual) tree.
        size: Size in bytes.
        last_access: Last access time (epoch seconds).
        last_modified: Last metadata/content refresh time.
        cache_time: When the entry entered the cache.
        pinned: Pinned for offline access.
        version_tag: Remote version tag of the cached content.
        checksum: SHA-256 of the cached content.
        access_count: Number of accesses.
    """

    file_id: str
    cache_path: str
    original_path: str
    size: int
    last_access: float
    last_modified: float
    cache_time: float
    pinned: bool = False
    version_tag: str = ""
    checksum: str = ""
    access_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        """Create an entry from a dict produced by :meth:`to_dict`."""
        return cls(**data)


@dataclass
class CacheStats:
    """Cache statistics."""

    total_size: int
    max_size: int
    file_count: int
    pinned_count: int
    pinned_size: int
    hit_count: int
    miss_count: int

    @property
    def hit_rate(self) -> float:
        """Hit rate percentage (0 when the cache was never accessed)."""
        accesses = self.hit_count + self.miss_count
        if accesses == 0:
            return 0.0
        return self.hit_count / accesses * 100.0


def _normalize_folder(path: str) -> str:
    """Strip trailing separators so prefix tests are component-aware."""
    stripped = path.rstrip("/")
    return stripped or "/"


def _is_under(path: str, folder: str) -> bool:
    """Check if ``path`` equals ``folder`` or lies below it."""
    if folder == "/":
        return path.startswith("/")
    return path == folder or path.startswith(folder + "/")


class CacheStore:
    """Owns cached file copies and their residency records.

    Usage:
        cache = CacheStore(cache_dir, store=metadata_store)
        cache.initialize()
        entry = cache.put("id-1", source_path, "/sync/docs/a.txt")
        path = cache.get("id-1")  # hit
        cache.pin_folder("/sync/docs")
        cache.cleanup(10 * 1024 * 1024)
        cache.shutdown()
    """

    def __init__(
        self,
        cache_dir: Path,
        store: MetadataStore | None = None,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        policy: EvictionPolicy = EvictionPolicy.LRU,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache store.

        Args:
            cache_dir: Directory for cached copies.
            store: Optional persistence backend for entries and pinned folders.
            max_size: Maximum total size in bytes.
            policy: Eviction policy.
            clock: Time source (injectable for tests).
        """
        self._cache_dir = Path(cache_dir)
        self._store = store
        self._max_size = max_size
        self._eviction = EvictionPolicyEngine(policy)
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        self._pinned_folders: list[str] = []
        self._current_size = 0
        self._hit_count = 0
        self._miss_count = 0
        self._initialized = False

    # === Lifecycle ===

    def initialize(self) -> None:
        """Create the cache directory and load persisted metadata."""
        with self._lock:
            if self._initialized:
                return

            self._cache_dir.mkdir(parents=True, exist_ok=True)
            if self._store is not None:
                self._entries = {e.file_id: e for e in self._store.load_entries()}
                self._pinned_folders = [
                    _normalize_folder(p) for p in self._store.load_pinned_folders()
                ]
            self._current_size = sum(e.size for e in self._entries.values())
            self._initialized = True
            logger.info(
                "Cache initialized at %s (%d entries, %d bytes)",
                self._cache_dir,
                len(self._entries),
                self._current_size,
            )

    def shutdown(self) -> None:
        """Persist metadata and return to the uninitialized state."""
        with self._lock:
            if not self._initialized:
                return
            self.flush()
            self._initialized = False
            logger.info("Cache shut down")

    def flush(self) -> None:
        """Write entries and pinned folders through the persistence backend."""
        with self._lock:
            self._require_initialized()
            if self._store is None:
                return
            self._store.save_entries(list(self._entries.values()))
            self._store.save_pinned_folders(list(self._pinned_folders))

    @property
    def is_initialized(self) -> bool:
        """Check if the cache is ready for use."""
        return self._initialized

    @property
    def cache_dir(self) -> Path:
        """Get the cache directory."""
        return self._cache_dir

    @property
    def current_size(self) -> int:
        """Total size of all cached entries in bytes."""
        with self._lock:
            return self._current_size

    @property
    def max_size(self) -> int:
        """Maximum cache size in bytes."""
        return self._max_size

    @property
    def policy(self) -> EvictionPolicy:
        """Current eviction policy."""
        return self._eviction.policy

    # === Content operations ===

    def put(
        self,
        file_id: str,
        source: Path,
        original_path: str,
        pinned: bool = False,
        version_tag: str = "",
    ) -> CacheEntry:
        """Copy a file into the cache and record it.

        Replaces any existing entry for ``file_id``. When the cache grows past
        its maximum size, unpinned entries are evicted to make room.

        Args:
            file_id: Stable remote identifier.
            source: File to copy into the cache.
            original_path: Path of the file in the synced tree.
            pinned: Pin for offline access.
            version_tag: Remote version tag of the content.

        Returns:
            The new cache entry.

        Raises:
            NotInitializedError: If the cache is not initialized.
            OSError: If the copy fails.
        """
        with self._lock:
            self._require_initialized()

            cache_path = self._cache_path_for(file_id)
            tmp_path = cache_path.with_name(cache_path.name + ".part")
            shutil.copyfile(source, tmp_path)
            os.replace(tmp_path, cache_path)

            previous = self._entries.get(file_id)
            if previous is not None:
                self._current_size -= previous.size

            now = self._clock()
            entry = CacheEntry(
                file_id=file_id,
                cache_path=str(cache_path),
                original_path=original_path,
                size=cache_path.stat().st_size,
                last_access=now,
                last_modified=now,
                cache_time=previous.cache_time if previous else now,
                pinned=pinned or (previous.pinned if previous else False),
                version_tag=version_tag,
                checksum=compute_file_hash(cache_path),
                access_count=(previous.access_count + 1) if previous else 1,
            )
            self._entries[file_id] = entry
            self._current_size += entry.size
            logger.info(
                "Cached %s (%d bytes, pinned: %s)",
                file_id,
                entry.size,
                "yes" if entry.pinned else "no",
            )

            if self._max_size and self._current_size > self._max_size:
                self._cleanup_locked(self._current_size - self._max_size, keep=file_id)

            return entry

    def get(self, file_id: str) -> Path | None:
        """Get the cached copy of a file.

        Counts a hit (and touches the entry) when present, a miss otherwise.

        Returns:
            Path to the cached copy, or None on a miss.
        """
        with self._lock:
            self._require_initialized()
            entry = self._entries.get(file_id)
            if entry is None:
                self._miss_count += 1
                return None

            self._hit_count += 1
            entry.last_access = self._clock()
            entry.access_count += 1
            return Path(entry.cache_path)

    def is_cached(self, file_id: str) -> bool:
        """Check if a file is cached without counting an access."""
        with self._lock:
            self._require_initialized()
            return file_id in self._entries

    def get_entry(self, file_id: str) -> CacheEntry:
        """Get a copy of the residency record for ``file_id``.

        Raises:
            EntryNotFoundError: If the file is not cached.
        """
        with self._lock:
            self._require_initialized()
            entry = self._entries.get(file_id)
            if entry is None:
                raise EntryNotFoundError(f"Not cached: {file_id}")
            return CacheEntry(**asdict(entry))

    def entries(self) -> list[CacheEntry]:
        """Get copies of all residency records."""
        with self._lock:
            self._require_initialized()
            return [CacheEntry(**asdict(e)) for e in self._entries.values()]

    def touch(self, file_id: str) -> None:
        """Update access time and count for a cached file.

        Raises:
            EntryNotFoundError: If the file is not cached.
        """
        with self._lock:
            entry = self._get_locked(file_id)
            entry.last_access = self._clock()
            entry.access_count += 1

    def update_entry(
        self,
        file_id: str,
        version_tag: str | None = None,
        checksum: str | None = None,
        original_path: str | None = None,
    ) -> None:
        """Refresh metadata of a cached file.

        Raises:
            EntryNotFoundError: If the file is not cached.
        """
        with self._lock:
            entry = self._get_locked(file_id)
            if version_tag is not None:
                entry.version_tag = version_tag
            if checksum is not None:
                entry.checksum = checksum
            if original_path is not None:
                entry.original_path = original_path
            entry.last_modified = self._clock()

    def evict(self, file_id: str) -> None:
        """Evict one file from the cache.

        Raises:
            EntryNotFoundError: If the file is not cached.
            NotAllowedError: If the file is pinned, directly or via a folder.
        """
        with self._lock:
            entry = self._get_locked(file_id)
            if entry.pinned or self._folder_pinned_locked(entry.original_path):
                logger.warning("Cannot evict pinned file: %s", file_id)
                raise NotAllowedError(f"Cannot evict pinned file: {file_id}")
            self._remove_locked(entry)
            logger.info("Evicted %s (%d bytes)", file_id, entry.size)

    def forget(self, file_id: str) -> bool:
        """Drop a file from the cache regardless of its pin state.

        Used when the item itself was deleted, so there is nothing left to
        keep offline.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            self._require_initialized()
            entry = self._entries.get(file_id)
            if entry is None:
                return False
            self._remove_locked(entry)
            logger.debug("Forgot cache entry %s", file_id)
            return True

    # === Pinning ===

    def pin(self, file_id: str) -> None:
        """Pin a cached file for offline access.

        Raises:
            EntryNotFoundError: If the file is not cached.
        """
        with self._lock:
            self._get_locked(file_id).pinned = True
            logger.info("Pinned file: %s", file_id)

    def unpin(self, file_id: str) -> None:
        """Unpin a cached file.

        Raises:
            EntryNotFoundError: If the file is not cached.
        """
        with self._lock:
            self._get_locked(file_id).pinned = False
            logger.info("Unpinned file: %s", file_id)

    def pin_folder(self, folder: str) -> None:
        """Pin a folder: its whole subtree stays resident."""
        with self._lock:
            self._require_initialized()
            folder = _normalize_folder(folder)
            if folder not in self._pinned_folders:
                self._pinned_folders.append(folder)
                logger.info("Pinned folder: %s", folder)

    def unpin_folder(self, folder: str) -> None:
        """Unpin a previously pinned folder.

        Raises:
            EntryNotFoundError: If the folder was not pinned.
        """
        with self._lock:
            self._require_initialized()
            folder = _normalize_folder(folder)
            if folder not in self._pinned_folders:
                raise EntryNotFoundError(f"Folder not pinned: {folder}")
            self._pinned_folders.remove(folder)
            logger.info("Unpinned folder: %s", folder)

    def is_folder_pinned(self, path: str) -> bool:
        """Check if ``path`` is a pinned folder or lies below one."""
        with self._lock:
            self._require_initialized()
            return self._folder_pinned_locked(path)

    def pinned_folders(self) -> list[str]:
        """Get pinned folders in pinning order."""
        with self._lock:
            self._require_initialized()
            return list(self._pinned_folders)

    # === Sizing and eviction ===

    def set_max_size(self, max_size: int) -> None:
        """Set the maximum cache size in bytes."""
        with self._lock:
            self._require_initialized()
            self._max_size = max_size
            logger.info("Set max cache size to %d bytes", max_size)

    def set_eviction_policy(self, policy: EvictionPolicy) -> None:
        """Set the eviction policy."""
        with self._lock:
            self._require_initialized()
            self._eviction.policy = policy
            logger.info("Set eviction policy to %s", policy.value)

    def cleanup(self, target: int = 0) -> EvictionResult:
        """Free space according to the eviction policy.

        Args:
            target: Bytes to free. 0 means "whatever exceeds max_size".

        Returns:
            EvictionResult with evicted ids, bytes freed and shortfall.
        """
        with self._lock:
            self._require_initialized()
            if target <= 0:
                target = max(0, self._current_size - self._max_size)
            return self._cleanup_locked(target)

    def clear(self, keep_pinned: bool = True) -> int:
        """Remove cached files.

        Args:
            keep_pinned: Keep pinned entries (directly or via folder).

        Returns:
            Number of entries removed.
        """
        with self._lock:
            self._require_initialized()
            logger.info("Clearing cache (keep pinned: %s)", "yes" if keep_pinned else "no")
            removed = 0
            for entry in list(self._entries.values()):
                if keep_pinned and (
                    entry.pinned or self._folder_pinned_locked(entry.original_path)
                ):
                    continue
                self._remove_locked(entry)
                removed += 1
            return removed

    def stats(self) -> CacheStats:
        """Get current cache statistics."""
        with self._lock:
            self._require_initialized()
            pinned = [
                e for e in self._entries.values()
                if e.pinned or self._folder_pinned_locked(e.original_path)
            ]
            return CacheStats(
                total_size=self._current_size,
                max_size=self._max_size,
                file_count=len(self._entries),
                pinned_count=len(pinned),
                pinned_size=sum(e.size for e in pinned),
                hit_count=self._hit_count,
                miss_count=self._miss_count,
            )

    # === Maintenance ===

    def verify(self, repair: bool = False) -> int:
        """Check cached files against their records.

        Issues counted: missing file, size or checksum mismatch, and orphan
        files in the cache directory that no record points to.

        Args:
            repair: Drop broken records and delete orphan files.

        Returns:
            Number of issues found.
        """
        with self._lock:
            self._require_initialized()
            logger.info("Verifying cache (repair: %s)", "yes" if repair else "no")
            issues = 0

            for entry in list(self._entries.values()):
                path = Path(entry.cache_path)
                problem = None
                if not path.is_file():
                    problem = "missing"
                elif path.stat().st_size != entry.size:
                    problem = "size mismatch"
                elif entry.checksum and compute_file_hash(path) != entry.checksum:
                    problem = "checksum mismatch"

                if problem:
                    issues += 1
                    logger.warning("Cache entry %s: %s", entry.file_id, problem)
                    if repair:
                        self._remove_locked(entry)

            known = {Path(e.cache_path).name for e in self._entries.values()}
            for child in self._cache_dir.iterdir():
                if child.is_file() and child.name not in known:
                    issues += 1
                    logger.warning("Orphan file in cache: %s", child.name)
                    if repair:
                        child.unlink()

            return issues

    def export_metadata(self, output: Path) -> int:
        """Export entry records and pinned folders as JSON.

        Returns:
            Number of entries exported.
        """
        with self._lock:
            self._require_initialized()
            payload = {
                "entries": [e.to_dict() for e in self._entries.values()],
                "pinned_folders": list(self._pinned_folders),
            }
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(json.dumps(payload, indent=2))
            logger.info("Exported %d cache entries to %s", len(self._entries), output)
            return len(self._entries)

    def import_metadata(self, source: Path) -> int:
        """Import entry records and pinned folders from JSON.

        Entries whose cached file is absent are skipped.

        Returns:
            Number of entries imported.
        """
        with self._lock:
            self._require_initialized()
            payload = json.loads(source.read_text())
            imported = 0
            for data in payload.get("entries", []):
                entry = CacheEntry.from_dict(data)
                if not Path(entry.cache_path).is_file():
                    logger.debug("Skipping import of %s: file missing", entry.file_id)
                    continue
                previous = self._entries.get(entry.file_id)
                if previous is not None:
                    self._current_size -= previous.size
                self._entries[entry.file_id] = entry
                self._current_size += entry.size
                imported += 1
            for folder in payload.get("pinned_folders", []):
                folder = _normalize_folder(folder)
                if folder not in self._pinned_folders:
                    self._pinned_folders.append(folder)
            logger.info("Imported %d cache entries from %s", imported, source)
            return imported

    # === Internals (lock held) ===

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Cache store is not initialized")

    def _get_locked(self, file_id: str) -> CacheEntry:
        self._require_initialized()
        entry = self._entries.get(file_id)
        if entry is None:
            raise EntryNotFoundError(f"Not cached: {file_id}")
        return entry

    def _folder_pinned_locked(self, path: str) -> bool:
        return any(_is_under(path, folder) for folder in self._pinned_folders)

    def _remove_locked(self, entry: CacheEntry) -> None:
        path = Path(entry.cache_path)
        if path.exists():
            path.unlink()
        del self._entries[entry.file_id]
        self._current_size -= entry.size

    def _cleanup_locked(self, target: int, keep: str | None = None) -> EvictionResult:
        result = EvictionResult(target=target)
        if target <= 0:
            return result

        candidates = self._eviction.select(
            [e for e in self._entries.values() if e.file_id != keep],
            target,
            self._folder_pinned_locked,
        )
        for entry in candidates:
            self._remove_locked(entry)
            result.evicted.append(entry.file_id)
            result.freed += entry.size

        if result.shortfall:
            logger.warning(
                "Cache cleanup freed %d of %d bytes (%d bytes pinned or in use)",
                result.freed,
                target,
                result.shortfall,
            )
        else:
            logger.info(
                "Cache cleanup (%s) evicted %d files, freed %d bytes",
                self._eviction.policy.value,
                len(result.evicted),
                result.freed,
            )
        return result

    def _cache_path_for(self, file_id: str) -> Path:
        return self._cache_dir / hashlib.sha256(file_id.encode("utf-8")).hexdigest()
