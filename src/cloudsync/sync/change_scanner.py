"""Change scanners for detecting local and remote changes.

This module provides:
- LocalChangeScanner: Walks the sync root and diffs it against SyncState
- RemoteChangeScanner: Consumes remote deltas and diffs them against SyncState
- RemoteScanResult: Items plus the token to store once they are processed

Architecture:
    Scanners are item producers. They never change SyncState status-wise
    and never touch the queue themselves; the engine filters their output
    by direction and admits it to the SyncQueue.

    Flow: Scanners → SyncEngine → SyncQueue → SyncProcessor

Local classification:
    | On disk | Record | Content             | Item                        |
    |---------|--------|---------------------|-----------------------------|
    | file    | none   | matches a missing   | MOVE (previous_path set)    |
    | file    | none   | -                   | UPLOAD                      |
    | dir     | none   | -                   | CREATE_FOLDER               |
    | file    | yes    | hash differs        | UPDATE                      |
    | absent  | yes    | -                   | DELETE (top-most only)      |
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

from cloudsync.core.errors import DeltaTokenExpiredError
from cloudsync.core.hashing import compute_file_hash
from cloudsync.sync.types import ChangeSource, SyncItem, SyncOperation, SyncRecord

if TYPE_CHECKING:
    from collections.abc import Iterator

    from cloudsync.sync.filters import PathFilter
    from cloudsync.sync.state import SyncState
    from cloudsync.sync.transport import RemoteEntry, Transport

logger = logging.getLogger(__name__)


def to_remote_path(sync_root: Path, local_path: Path) -> str:
    """Map a local path under ``sync_root`` to its remote path."""
    return "/" + local_path.relative_to(sync_root).as_posix()


def to_local_path(sync_root: Path, remote_path: str) -> Path:
    """Map a remote path to its local path under ``sync_root``."""
    return sync_root.joinpath(*[p for p in remote_path.split("/") if p])


def _top_most(paths: list[str]) -> list[str]:
    """Drop paths that lie below another path of the list."""
    result: list[str] = []
    for path in sorted(paths):
        if not any(path.startswith(parent + os.sep) for parent in result):
            result.append(path)
    return result


class LocalChangeScanner:
    """Detects new, modified, deleted and moved files under the sync root."""

    def __init__(self, sync_root: Path, state: SyncState, path_filter: PathFilter) -> None:
        """Initialize the scanner.

        Args:
            sync_root: Local folder kept in sync.
            state: Last known synced state.
            path_filter: Include/exclude and hidden/system filter.
        """
        self._root = Path(sync_root).resolve()
        self._state = state
        self._filter = path_filter

    def scan(self, scope: Path | None = None, recursive: bool = True) -> list[SyncItem]:
        """Scan the sync root (or a part of it) for changes.

        Args:
            scope: File or folder to restrict the scan to (default: whole root).
            recursive: Descend into subfolders of ``scope``.

        Returns:
            Pending items: folder creations first, then uploads, moves and
            updates, then deletions.
        """
        scope = Path(scope).resolve() if scope else self._root
        folders: list[SyncItem] = []
        new_files: list[tuple[Path, os.stat_result]] = []
        items: list[SyncItem] = []
        found: set[str] = set()

        for path, is_dir in self._walk(scope, recursive):
            local_path = str(path)
            found.add(local_path)
            record = self._state.get(local_path)

            if is_dir:
                if record is None:
                    folders.append(self._item(path, SyncOperation.CREATE_FOLDER, is_folder=True))
                continue

            stat = path.stat()
            if record is None:
                new_files.append((path, stat))
            elif stat.st_mtime != record.local_mtime or stat.st_size != record.size:
                local_hash = compute_file_hash(path)
                if local_hash != record.content_hash:
                    logger.debug("Found modified local file: %s", local_path)
                    items.append(self._item(
                        path,
                        SyncOperation.UPDATE,
                        file_id=record.file_id,
                        stat=stat,
                        local_hash=local_hash,
                    ))
                else:
                    # Touched but unchanged: remember the new mtime
                    self._state.put(replace(record, local_mtime=stat.st_mtime))

        missing = {
            r.local_path: r for r in self._state.records()
            if r.local_path not in found
            and self._in_scope(Path(r.local_path), scope, recursive)
            and self._accepts(Path(r.local_path), r.is_folder)
        }

        for path, stat in new_files:
            moved_from = self._match_move(path, stat, missing) if missing else None
            if moved_from is not None:
                logger.debug("Found moved local file: %s -> %s", moved_from.local_path, path)
                del missing[moved_from.local_path]
                item = self._item(
                    path,
                    SyncOperation.MOVE,
                    file_id=moved_from.file_id,
                    stat=stat,
                    local_hash=moved_from.content_hash,
                )
                item.previous_path = moved_from.local_path
                items.append(item)
            else:
                logger.debug("Found new local file: %s", path)
                items.append(self._item(path, SyncOperation.UPLOAD, stat=stat))

        deletions = []
        for local_path in _top_most(list(missing)):
            record = missing[local_path]
            logger.debug("Found deleted local file: %s", local_path)
            deletions.append(SyncItem(
                local_path=local_path,
                remote_path=record.remote_path,
                operation=SyncOperation.DELETE,
                file_id=record.file_id,
                source=ChangeSource.LOCAL,
                is_folder=record.is_folder,
            ))

        result = folders + items + deletions
        if result:
            logger.info(
                "Local scan of %s: %d folders, %d files, %d deletions",
                scope,
                len(folders),
                len(items),
                len(deletions),
            )
        return result

    def _walk(self, scope: Path, recursive: bool) -> Iterator[tuple[Path, bool]]:
        """Yield (path, is_dir) for accepted entries below ``scope``."""
        if not scope.exists():
            return
        if scope.is_file():
            if not scope.is_symlink() and self._accepts(scope, False):
                yield scope, False
            return

        if scope != self._root and self._accepts(scope, True):
            yield scope, True

        for root_str, dirs, files in os.walk(scope):
            root = Path(root_str)
            accepted_dirs = []
            for d in sorted(dirs):
                path = root / d
                if path.is_symlink() or not self._accepts(path, True):
                    continue
                accepted_dirs.append(d)
                yield path, True
            dirs[:] = accepted_dirs if recursive else []

            for filename in sorted(files):
                path = root / filename
                if path.is_symlink() or not self._accepts(path, False):
                    continue
                yield path, False

    def _accepts(self, path: Path, is_dir: bool) -> bool:
        return self._filter.accepts(path.relative_to(self._root).as_posix(), is_dir)

    def _in_scope(self, path: Path, scope: Path, recursive: bool) -> bool:
        if scope == self._root and recursive:
            return True
        if path == scope:
            return True
        if recursive:
            return scope in path.parents
        return path.parent == scope

    def _match_move(
        self,
        path: Path,
        stat: os.stat_result,
        missing: dict[str, SyncRecord],
    ) -> SyncRecord | None:
        candidates = [
            r for r in missing.values()
            if not r.is_folder and r.size == stat.st_size and r.content_hash
        ]
        if not candidates:
            return None
        local_hash = compute_file_hash(path)
        for record in candidates:
            if record.content_hash == local_hash:
                return record
        return None

    def _item(
        self,
        path: Path,
        operation: SyncOperation,
        file_id: str = "",
        stat: os.stat_result | None = None,
        local_hash: str = "",
        is_folder: bool = False,
    ) -> SyncItem:
        return SyncItem(
            local_path=str(path),
            remote_path=to_remote_path(self._root, path),
            operation=operation,
            file_id=file_id,
            source=ChangeSource.LOCAL,
            local_modified=stat.st_mtime if stat else 0.0,
            size=stat.st_size if stat else 0,
            local_hash=local_hash,
            is_folder=is_folder,
        )


@dataclass
class RemoteScanResult:
    """Remote scan output.

    Attributes:
        items: Pending items for remote-side changes.
        token: Delta token to store after the items were processed.
        full: The scan was a full enumeration.
    """

    items: list[SyncItem] = field(default_factory=list)
    token: str = ""
    full: bool = False


class RemoteChangeScanner:
    """Turns remote deltas into SyncItems."""

    def __init__(
        self,
        transport: Transport,
        sync_root: Path,
        state: SyncState,
        path_filter: PathFilter,
    ) -> None:
        self._transport = transport
        self._root = Path(sync_root).resolve()
        self._state = state
        self._filter = path_filter

    def scan(self, token: str | None) -> RemoteScanResult:
        """Fetch changes since ``token``.

        A missing or expired token forces a full enumeration, after which
        records absent from the enumeration are reported as deleted.

        Raises:
            TransportError: If the delta request fails.
        """
        try:
            delta = self._transport.get_delta(token)
        except DeltaTokenExpiredError:
            logger.warning("Delta token expired, falling back to full enumeration")
            token = None
            delta = self._transport.get_delta(None)

        full = delta.reset or token is None
        items: list[SyncItem] = []
        seen: set[str] = set()

        for change in delta.changes:
            entry = change.entry
            seen.add(entry.file_id)
            if not self._filter.accepts(entry.path.strip("/"), entry.is_folder):
                continue
            item = self._diff(entry, change.deleted)
            if item is not None:
                items.append(item)

        if full:
            gone = {
                r.local_path: r for r in self._state.records()
                if r.file_id and r.file_id not in seen
            }
            for local_path in _top_most(list(gone)):
                record = gone[local_path]
                items.append(SyncItem(
                    local_path=local_path,
                    remote_path=record.remote_path,
                    operation=SyncOperation.DELETE,
                    file_id=record.file_id,
                    source=ChangeSource.REMOTE,
                    is_folder=record.is_folder,
                ))

        if items:
            logger.info(
                "Remote scan (%s): %d changes",
                "full" if full else "incremental",
                len(items),
            )
        return RemoteScanResult(items=items, token=delta.token, full=full)

    def _diff(self, entry: RemoteEntry, deleted: bool) -> SyncItem | None:
        record = self._state.get_by_id(entry.file_id)
        local_path = to_local_path(self._root, entry.path)

        if deleted:
            if record is None:
                return None
            return SyncItem(
                local_path=record.local_path,
                remote_path=record.remote_path,
                operation=SyncOperation.DELETE,
                file_id=entry.file_id,
                source=ChangeSource.REMOTE,
                is_folder=record.is_folder,
            )

        if record is None:
            record = self._state.get(str(local_path))
            if record is None:
                operation = (
                    SyncOperation.CREATE_FOLDER if entry.is_folder else SyncOperation.DOWNLOAD
                )
            elif entry.is_folder or entry.version_tag == record.version_tag:
                return None
            else:
                # Same path under a new identifier: replaced remotely
                operation = SyncOperation.UPDATE
        elif record.local_path != str(local_path):
            operation = SyncOperation.MOVE
        elif entry.is_folder or entry.version_tag == record.version_tag:
            return None
        else:
            operation = SyncOperation.UPDATE

        item = SyncItem(
            local_path=str(local_path),
            remote_path=entry.path,
            operation=operation,
            file_id=entry.file_id,
            source=ChangeSource.REMOTE,
            remote_modified=entry.modified,
            size=entry.size,
            version_tag=entry.version_tag,
            remote_hash=entry.content_hash,
            is_folder=entry.is_folder,
        )
        if operation is SyncOperation.MOVE:
            item.previous_path = record.local_path
        return item
