"""Remote transport contract and a folder-backed implementation.

This module provides:
- RemoteEntry, RemoteChange, DeltaResult: Data exchanged with the remote side
- Transport: Protocol the sync core consumes
- FolderTransport: Transport that treats a directory (e.g. a mounted
  network share) as the remote namespace

Remote paths are "/" separated and rooted at "/". Every transport call fails
with TransientNetworkError (retryable) or PermanentRemoteError (not
retryable); DeltaTokenExpiredError asks the caller for a full enumeration.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from cloudsync.core.errors import (
    PermanentRemoteError,
    RemoteNotFoundError,
    TransientNetworkError,
)
from cloudsync.core.hashing import compute_file_hash

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
INDEX_FILE = ".cloudsync-index.json"


@dataclass
class RemoteEntry:
    """Remote-side metadata of one file or folder."""

    file_id: str
    path: str
    version_tag: str = ""
    size: int = 0
    modified: float = 0.0
    content_hash: str = ""
    is_folder: bool = False


@dataclass
class RemoteChange:
    """One entry of a delta: a changed entry, or a removal."""

    entry: RemoteEntry
    deleted: bool = False


@dataclass
class DeltaResult:
    """Answer to a delta request.

    Attributes:
        changes: Changed or removed entries since the given token.
        token: Token to pass on the next request.
        reset: ``changes`` is a full enumeration; entries absent from it
            no longer exist.
    """

    changes: list[RemoteChange] = field(default_factory=list)
    token: str = ""
    reset: bool = False


class Transport(Protocol):
    """Remote storage operations the sync core depends on."""

    def upload(
        self, remote_path: str, chunks: Iterable[bytes], file_id: str = ""
    ) -> RemoteEntry:
        """Store content at ``remote_path`` (replacing ``file_id`` if given)."""
        ...

    def download(self, file_id: str) -> Iterator[bytes]:
        """Stream the content of ``file_id``."""
        ...

    def delete(self, file_id: str) -> None: ...

    def move(self, file_id: str, new_path: str) -> RemoteEntry: ...

    def create_folder(self, remote_path: str) -> RemoteEntry: ...

    def get_delta(self, token: str | None) -> DeltaResult:
        """Changes since ``token`` (None = full enumeration)."""
        ...


@contextlib.contextmanager
def _translate_errors(what: str) -> Iterator[None]:
    """Map filesystem errors on the remote folder to transport errors."""
    try:
        yield
    except FileNotFoundError as e:
        raise RemoteNotFoundError(f"{what}: {e}") from e
    except (NotADirectoryError, PermissionError) as e:
        raise PermanentRemoteError(f"{what}: {e}") from e
    except OSError as e:
        raise TransientNetworkError(f"{what}: {e}") from e


class FolderTransport:
    """Transport backed by a plain directory.

    Stable identifiers are kept in a JSON index at the folder root. Delta
    requests always answer with a full enumeration (``reset=True``).

    Usage:
        transport = FolderTransport(Path("/mnt/share/cloud"))
        entry = transport.upload("/docs/a.txt", [b"hello"])
        data = b"".join(transport.download(entry.file_id))
    """

    def __init__(self, root: Path) -> None:
        """Initialize the transport.

        Args:
            root: Directory acting as the remote namespace (created if missing).
        """
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._index_path = self._root / INDEX_FILE
        self._ids: dict[str, str] = {}  # file_id -> remote path
        self._load_index()

    @property
    def root(self) -> Path:
        return self._root

    # === Transport contract ===

    def upload(
        self, remote_path: str, chunks: Iterable[bytes], file_id: str = ""
    ) -> RemoteEntry:
        with self._lock:
            if file_id and file_id not in self._ids:
                raise RemoteNotFoundError(f"Not found: {file_id}")
            target = self._local(remote_path)
            with _translate_errors(f"Upload {remote_path}"):
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp = target.with_name(target.name + ".part")
                with open(tmp, "wb") as f:
                    for chunk in chunks:
                        f.write(chunk)
                os.replace(tmp, target)

            file_id = file_id or self._id_for(remote_path) or uuid.uuid4().hex
            previous = self._ids.get(file_id)
            if previous and previous != remote_path:
                with _translate_errors(f"Upload {remote_path}"):
                    self._local(previous).unlink(missing_ok=True)
            self._ids[file_id] = remote_path
            self._save_index()
            logger.debug("Uploaded %s as %s", remote_path, file_id)
            return self._entry(file_id, remote_path)

    def download(self, file_id: str) -> Iterator[bytes]:
        with self._lock:
            remote_path = self._path_for(file_id)
            source = self._local(remote_path)
        with _translate_errors(f"Download {remote_path}"), open(source, "rb") as f:
            yield from iter(lambda: f.read(CHUNK_SIZE), b"")

    def delete(self, file_id: str) -> None:
        with self._lock:
            remote_path = self._path_for(file_id)
            target = self._local(remote_path)
            with _translate_errors(f"Delete {remote_path}"):
                if target.is_dir():
                    for child in sorted(target.rglob("*"), reverse=True):
                        if child.is_dir():
                            child.rmdir()
                        else:
                            child.unlink()
                    target.rmdir()
                elif target.exists():
                    target.unlink()
            prefix = remote_path.rstrip("/") + "/"
            for fid, path in list(self._ids.items()):
                if fid == file_id or path.startswith(prefix):
                    del self._ids[fid]
            self._save_index()
            logger.debug("Deleted %s (%s)", remote_path, file_id)

    def move(self, file_id: str, new_path: str) -> RemoteEntry:
        with self._lock:
            old_path = self._path_for(file_id)
            target = self._local(new_path)
            with _translate_errors(f"Move {old_path} -> {new_path}"):
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(self._local(old_path), target)

            old_prefix = old_path.rstrip("/") + "/"
            for fid, path in list(self._ids.items()):
                if path.startswith(old_prefix):
                    self._ids[fid] = new_path.rstrip("/") + "/" + path[len(old_prefix):]
            self._ids[file_id] = new_path
            self._save_index()
            return self._entry(file_id, new_path)

    def create_folder(self, remote_path: str) -> RemoteEntry:
        with self._lock:
            with _translate_errors(f"Create folder {remote_path}"):
                self._local(remote_path).mkdir(parents=True, exist_ok=True)
            file_id = self._id_for(remote_path) or uuid.uuid4().hex
            self._ids[file_id] = remote_path
            self._save_index()
            return self._entry(file_id, remote_path)

    def get_delta(self, token: str | None) -> DeltaResult:
        with self._lock, _translate_errors("Enumerate"):
            by_path = {path: fid for fid, path in self._ids.items()}
            seen: dict[str, str] = {}
            changes: list[RemoteChange] = []

            for dirpath, dirnames, filenames in os.walk(self._root):
                dirnames.sort()
                base = Path(dirpath)
                names = [(d, True) for d in dirnames] + [
                    (f, False) for f in sorted(filenames)
                    if f != INDEX_FILE and not f.endswith(".part")
                ]
                for name, is_folder in names:
                    rel = (base / name).relative_to(self._root).as_posix()
                    remote_path = "/" + rel
                    file_id = by_path.get(remote_path) or uuid.uuid4().hex
                    seen[file_id] = remote_path
                    changes.append(RemoteChange(self._entry(file_id, remote_path)))

            if seen != self._ids:
                self._ids = seen
                self._save_index()

            return DeltaResult(changes=changes, token=str(time.time_ns()), reset=True)

    # === Helpers ===

    def _local(self, remote_path: str) -> Path:
        rel = remote_path.strip("/")
        if not rel or ".." in rel.split("/"):
            raise PermanentRemoteError(f"Invalid remote path: {remote_path!r}")
        return self._root / rel

    def _path_for(self, file_id: str) -> str:
        path = self._ids.get(file_id)
        if path is None:
            raise RemoteNotFoundError(f"Not found: {file_id}")
        return path

    def _id_for(self, remote_path: str) -> str | None:
        for fid, path in self._ids.items():
            if path == remote_path:
                return fid
        return None

    def _entry(self, file_id: str, remote_path: str) -> RemoteEntry:
        local = self._local(remote_path)
        stat = local.stat()
        if local.is_dir():
            return RemoteEntry(
                file_id=file_id,
                path=remote_path,
                version_tag=f"{stat.st_mtime_ns:x}",
                modified=stat.st_mtime,
                is_folder=True,
            )
        return RemoteEntry(
            file_id=file_id,
            path=remote_path,
            version_tag=f"{stat.st_mtime_ns:x}-{stat.st_size:x}",
            size=stat.st_size,
            modified=stat.st_mtime,
            content_hash=compute_file_hash(local),
        )

    def _load_index(self) -> None:
        if self._index_path.exists():
            self._ids = json.loads(self._index_path.read_text())

    def _save_index(self) -> None:
        tmp = self._index_path.with_name(INDEX_FILE + ".part")
        tmp.write_text(json.dumps(self._ids, indent=2, sort_keys=True))
        os.replace(tmp, self._index_path)
