"""Durable metadata for the cache and the sync engine.

This module provides:
- MetadataStore: The narrow load/save contract the core depends on
- SQLiteMetadataStore: SQLite implementation of that contract

Each save replaces the stored set in a single transaction so a later load
always reads a consistent snapshot.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from cloudsync.cache.store import CacheEntry
from cloudsync.sync.types import SyncRecord, SyncStateSnapshot

logger = logging.getLogger(__name__)


class MetadataStore(Protocol):
    """Persistence contract consumed by CacheStore and SyncEngine."""

    def load_entries(self) -> list[CacheEntry]: ...

    def save_entries(self, entries: list[CacheEntry]) -> None: ...

    def load_pinned_folders(self) -> list[str]: ...

    def save_pinned_folders(self, folders: list[str]) -> None: ...

    def load_sync_state(self) -> SyncStateSnapshot: ...

    def save_sync_state(self, snapshot: SyncStateSnapshot) -> None: ...


class SQLiteMetadataStore:
    """SQLite-backed metadata store.

    Usage:
        store = SQLiteMetadataStore(Path("~/.cloudsync/state.db").expanduser())
        cache = CacheStore(cache_dir, store=store)
        ...
        store.close()
    """

    def __init__(self, db_path: Path) -> None:
        """Open (and create if needed) the metadata database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit; explicit BEGIN for batches
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                file_id TEXT PRIMARY KEY,
                cache_path TEXT NOT NULL,
                original_path TEXT NOT NULL,
                size INTEGER NOT NULL,
                last_access REAL NOT NULL,
                last_modified REAL NOT NULL,
                cache_time REAL NOT NULL,
                pinned INTEGER NOT NULL DEFAULT 0,
                version_tag TEXT NOT NULL DEFAULT '',
                checksum TEXT NOT NULL DEFAULT '',
                access_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS pinned_folders (
                position INTEGER PRIMARY KEY,
                path TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS sync_records (
                local_path TEXT PRIMARY KEY,
                file_id TEXT NOT NULL,
                remote_path TEXT NOT NULL,
                version_tag TEXT NOT NULL DEFAULT '',
                content_hash TEXT NOT NULL DEFAULT '',
                local_mtime REAL NOT NULL DEFAULT 0,
                size INTEGER NOT NULL DEFAULT 0,
                is_folder INTEGER NOT NULL DEFAULT 0,
                synced_at REAL NOT NULL DEFAULT 0
            );

            -- Key-value sync state
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Cache entries ===

    def load_entries(self) -> list[CacheEntry]:
        """Load all cache entry records."""
        with self._lock:
            rows = self._conn.execute("SELECT * FROM cache_entries").fetchall()
        return [
            CacheEntry(
                file_id=row["file_id"],
                cache_path=row["cache_path"],
                original_path=row["original_path"],
                size=row["size"],
                last_access=row["last_access"],
                last_modified=row["last_modified"],
                cache_time=row["cache_time"],
                pinned=bool(row["pinned"]),
                version_tag=row["version_tag"],
                checksum=row["checksum"],
                access_count=row["access_count"],
            )
            for row in rows
        ]

    def save_entries(self, entries: list[CacheEntry]) -> None:
        """Replace the stored cache entry set."""
        with self._lock, self._transaction():
            self._conn.execute("DELETE FROM cache_entries")
            self._conn.executemany(
                """
                INSERT INTO cache_entries (
                    file_id, cache_path, original_path, size, last_access,
                    last_modified, cache_time, pinned, version_tag, checksum,
                    access_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        e.file_id, e.cache_path, e.original_path, e.size,
                        e.last_access, e.last_modified, e.cache_time,
                        int(e.pinned), e.version_tag, e.checksum, e.access_count,
                    )
                    for e in entries
                ],
            )
        logger.debug("Saved %d cache entries", len(entries))

    # === Pinned folders ===

    def load_pinned_folders(self) -> list[str]:
        """Load pinned folders in pinning order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT path FROM pinned_folders ORDER BY position"
            ).fetchall()
        return [row["path"] for row in rows]

    def save_pinned_folders(self, folders: list[str]) -> None:
        """Replace the stored pinned folder list."""
        with self._lock, self._transaction():
            self._conn.execute("DELETE FROM pinned_folders")
            self._conn.executemany(
                "INSERT INTO pinned_folders (position, path) VALUES (?, ?)",
                list(enumerate(folders)),
            )

    # === Sync state ===

    def load_sync_state(self) -> SyncStateSnapshot:
        """Load the delta token, last sync time and per-item records."""
        with self._lock:
            state = {
                row["key"]: row["value"]
                for row in self._conn.execute("SELECT key, value FROM sync_state")
            }
            rows = self._conn.execute(
                "SELECT * FROM sync_records ORDER BY local_path"
            ).fetchall()

        records = [
            SyncRecord(
                file_id=row["file_id"],
                local_path=row["local_path"],
                remote_path=row["remote_path"],
                version_tag=row["version_tag"],
                content_hash=row["content_hash"],
                local_mtime=row["local_mtime"],
                size=row["size"],
                is_folder=bool(row["is_folder"]),
                synced_at=row["synced_at"],
            )
            for row in rows
        ]
        last_sync = state.get("last_sync_time")
        return SyncStateSnapshot(
            delta_token=state.get("delta_token") or None,
            last_sync_time=float(last_sync) if last_sync else 0.0,
            records=records,
        )

    def save_sync_state(self, snapshot: SyncStateSnapshot) -> None:
        """Replace the stored sync state with ``snapshot``."""
        with self._lock, self._transaction():
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                ("delta_token", snapshot.delta_token or ""),
            )
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                ("last_sync_time", str(snapshot.last_sync_time)),
            )
            self._conn.execute("DELETE FROM sync_records")
            self._conn.executemany(
                """
                INSERT INTO sync_records (
                    local_path, file_id, remote_path, version_tag, content_hash,
                    local_mtime, size, is_folder, synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.local_path, r.file_id, r.remote_path, r.version_tag,
                        r.content_hash, r.local_mtime, r.size, int(r.is_folder),
                        r.synced_at,
                    )
                    for r in snapshot.records
                ],
            )
        logger.debug("Saved sync state (%d records)", len(snapshot.records))

    def _transaction(self) -> _Transaction:
        return _Transaction(self._conn)


class _Transaction:
    """BEGIN/COMMIT around a batch, ROLLBACK if it raises."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn.execute("BEGIN")
        return self._conn

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if exc_type is None:
            self._conn.execute("COMMIT")
        else:
            self._conn.execute("ROLLBACK")
