"""Conflict detection and resolution.

A conflict exists when both sides changed the same item since its last
known synced state:

    local_modified > record.synced_at
    AND version_tag != record.version_tag

Only UPDATE items are checked against a record. A DOWNLOAD that would land
on an untracked local file with different content is a create/create
conflict. Uploads and folder creations never conflict. Equal local and
remote content hashes cancel the conflict.

Resolution modes:
    | Mode        | Result                                                  |
    |-------------|---------------------------------------------------------|
    | local_wins  | item re-issued as UPLOAD (remote change discarded)      |
    | remote_wins | item re-issued as DOWNLOAD (local change discarded)     |
    | merge       | text: line merge written locally, then UPLOAD           |
    |             | binary: falls back to rename                            |
    | rename      | local renamed to a conflict copy (new UPLOAD item),     |
    |             | item re-issued as UPDATE from the remote side           |
    | ask         | held until a decision arrives                           |
"""

from __future__ import annotations

import difflib
import logging
import platform
import socket
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from cloudsync.core.config import ConflictMode
from cloudsync.core.hashing import compute_hash
from cloudsync.sync.change_scanner import to_remote_path
from cloudsync.sync.types import ChangeSource, SyncItem, SyncOperation

if TYPE_CHECKING:
    from cloudsync.sync.transport import Transport
    from cloudsync.sync.types import SyncRecord

logger = logging.getLogger(__name__)

# Bytes inspected when deciding whether content is text
TEXT_SNIFF_SIZE = 8192

LOCAL_MARKER = "<<<<<<< local"
SEPARATOR_MARKER = "======="
REMOTE_MARKER = ">>>>>>> remote"

RESOLUTION_CHOICES = [m.value for m in ConflictMode if m is not ConflictMode.ASK]


class ConflictDetector:
    """Decides whether an item is in conflict with its last synced state."""

    def is_conflict(self, item: SyncItem, record: SyncRecord | None) -> bool:
        """Check if both sides changed ``item`` since ``record``.

        Args:
            item: Item about to be processed, with ``local_modified`` and
                ``local_hash`` reflecting the file currently on disk.
            record: Last known synced state (None if never synced).
        """
        if item.is_folder:
            return False

        if record is None:
            # Create/create: remote new file lands on an untracked local one
            return (
                item.operation is SyncOperation.DOWNLOAD
                and item.local_modified > 0
                and not self._same_content(item)
            )

        if item.operation is not SyncOperation.UPDATE:
            return False

        local_changed = item.local_modified > record.synced_at
        remote_changed = bool(item.version_tag) and item.version_tag != record.version_tag
        if not (local_changed and remote_changed):
            return False

        if self._same_content(item):
            logger.debug("Both sides changed %s to identical content", item.local_path)
            return False
        return True

    @staticmethod
    def _same_content(item: SyncItem) -> bool:
        return bool(item.local_hash) and item.local_hash == item.remote_hash


def get_machine_name() -> str:
    """Get a short machine identifier for conflict filenames."""
    try:
        hostname = socket.gethostname()
        return hostname[:15]
    except OSError:
        return platform.node()[:15] or "unknown"


def generate_conflict_filename(path: Path, machine_name: str | None = None) -> Path:
    """Generate a conflict filename: name.conflict-YYYYMMDD-HHMMSS-mmm-machine.ext

    Args:
        path: Original file path.
        machine_name: Optional machine identifier (auto-detected if None).

    Returns:
        Path with conflict suffix inserted before the extension.
    """
    machine = machine_name or get_machine_name()
    now = datetime.now()
    timestamp = now.strftime("%Y%m%d-%H%M%S") + f"-{now.microsecond // 1000:03d}"
    return path.parent / f"{path.stem}.conflict-{timestamp}-{machine}{path.suffix}"


def is_text(data: bytes) -> bool:
    """Check if content looks like UTF-8 text."""
    if b"\x00" in data[:TEXT_SNIFF_SIZE]:
        return False
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def merge_text(local: str, remote: str) -> str:
    """Line-level merge of two versions without a common base.

    Lines present on only one side are kept. Lines that were replaced on
    one side relative to the other are emitted between conflict markers.
    """
    local_lines = local.splitlines(keepends=True)
    remote_lines = remote.splitlines(keepends=True)
    merged: list[str] = []

    matcher = difflib.SequenceMatcher(None, local_lines, remote_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            merged.extend(local_lines[i1:i2])
        elif tag == "delete":
            merged.extend(local_lines[i1:i2])
        elif tag == "insert":
            merged.extend(remote_lines[j1:j2])
        else:
            merged.append(LOCAL_MARKER + "\n")
            merged.extend(_terminated(local_lines[i1:i2]))
            merged.append(SEPARATOR_MARKER + "\n")
            merged.extend(_terminated(remote_lines[j1:j2]))
            merged.append(REMOTE_MARKER + "\n")

    return "".join(merged)


def _terminated(lines: list[str]) -> list[str]:
    if lines and not lines[-1].endswith("\n"):
        return lines[:-1] + [lines[-1] + "\n"]
    return lines


class ConflictResolver:
    """Rewrites a conflicted item according to a resolution mode."""

    def __init__(
        self,
        transport: Transport,
        sync_root: Path,
        machine_name: str | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            transport: Used to fetch remote content for merges.
            sync_root: Local folder kept in sync.
            machine_name: Identifier used in conflict copy names.
        """
        self._transport = transport
        self._root = Path(sync_root).resolve()
        self._machine_name = machine_name

    def resolve(self, item: SyncItem, mode: ConflictMode) -> list[SyncItem]:
        """Apply ``mode`` to a conflicted item.

        The item's status is left to the caller; the returned items are to be
        queued as PENDING.

        Args:
            item: The conflicted item.
            mode: Resolution mode (not ASK).

        Returns:
            Items to re-queue (the rewritten item first).

        Raises:
            ValueError: If mode is ASK.
            OSError: If a local rename or write fails.
            TransportError: If fetching remote content for a merge fails.
        """
        if mode is ConflictMode.ASK:
            raise ValueError("ASK is not a resolution")

        logger.info("Resolving conflict on %s: %s", item.local_path, mode.value)

        if mode is ConflictMode.LOCAL_WINS:
            return [self._reissue(item, SyncOperation.UPLOAD, ChangeSource.LOCAL)]
        if mode is ConflictMode.REMOTE_WINS:
            return [self._reissue(item, SyncOperation.DOWNLOAD, ChangeSource.REMOTE)]
        if mode is ConflictMode.MERGE:
            merged = self._merge(item)
            if merged is not None:
                return [merged]
            logger.info("Cannot merge binary content of %s, keeping both", item.local_path)
        return self._rename(item)

    def _reissue(
        self, item: SyncItem, operation: SyncOperation, source: ChangeSource
    ) -> SyncItem:
        item.operation = operation
        item.source = source
        item.error_message = ""
        return item

    def _merge(self, item: SyncItem) -> SyncItem | None:
        local_path = Path(item.local_path)
        local = local_path.read_bytes()
        if not is_text(local):
            return None
        remote = b"".join(self._transport.download(item.file_id))
        if not is_text(remote):
            return None

        merged = merge_text(local.decode("utf-8"), remote.decode("utf-8")).encode("utf-8")
        local_path.write_bytes(merged)
        item.local_hash = compute_hash(merged)
        item.size = len(merged)
        item.local_modified = local_path.stat().st_mtime
        return self._reissue(item, SyncOperation.UPLOAD, ChangeSource.LOCAL)

    def _rename(self, item: SyncItem) -> list[SyncItem]:
        local_path = Path(item.local_path)
        copy_path = generate_conflict_filename(local_path, self._machine_name)
        local_path.rename(copy_path)
        logger.info("Kept local version of %s as %s", local_path.name, copy_path.name)

        stat = copy_path.stat()
        copy_item = SyncItem(
            local_path=str(copy_path),
            remote_path=to_remote_path(self._root, copy_path),
            operation=SyncOperation.UPLOAD,
            source=ChangeSource.LOCAL,
            local_modified=stat.st_mtime,
            size=stat.st_size,
            local_hash=item.local_hash,
            pinned=item.pinned,
        )

        item.local_modified = 0.0
        item.local_hash = ""
        return [self._reissue(item, SyncOperation.UPDATE, ChangeSource.REMOTE), copy_item]
