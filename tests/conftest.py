"""Shared fixtures: in-memory transport, fake clock, cache and engine factories."""

from __future__ import annotations

import hashlib
import itertools
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from cloudsync.cache.store import CacheStore
from cloudsync.core.config import SyncConfig
from cloudsync.core.errors import DeltaTokenExpiredError, RemoteNotFoundError
from cloudsync.sync.engine import SyncEngine
from cloudsync.sync.transport import DeltaResult, RemoteChange, RemoteEntry


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class InMemoryTransport:
    """Transport keeping content in memory, with a delta journal.

    Delta tokens are offsets into the journal. Failures can be injected per
    operation with :meth:`fail`.
    """

    def __init__(self, chunk_size: int = 4) -> None:
        self.entries: dict[str, RemoteEntry] = {}
        self.content: dict[str, bytes] = {}
        self.journal: list[RemoteChange] = []
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.expired = False
        self.chunk_size = chunk_size
        self._ids = itertools.count(1)
        self._versions = itertools.count(1)

    # === Test helpers ===

    def fail(self, operation: str, *errors: Exception) -> None:
        """Make the next calls to ``operation`` raise ``errors`` in order."""
        self.failures.setdefault(operation, []).extend(errors)

    def put_remote(self, remote_path: str, data: bytes) -> RemoteEntry:
        """Simulate a change made on the remote side by another client."""
        file_id = self._id_for(remote_path) or f"id-{next(self._ids)}"
        return self._store(file_id, remote_path, data)

    def remove_remote(self, remote_path: str) -> None:
        """Simulate a remote deletion by another client."""
        file_id = self._id_for(remote_path)
        assert file_id is not None, remote_path
        self._delete(file_id)

    def data_at(self, remote_path: str) -> bytes | None:
        file_id = self._id_for(remote_path)
        return self.content.get(file_id) if file_id else None

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    # === Transport contract ===

    def upload(
        self, remote_path: str, chunks: Iterable[bytes], file_id: str = ""
    ) -> RemoteEntry:
        self.calls.append(("upload", remote_path))
        self._maybe_fail("upload")
        if file_id and file_id not in self.entries:
            raise RemoteNotFoundError(f"Not found: {file_id}")
        data = b"".join(chunks)
        file_id = file_id or self._id_for(remote_path) or f"id-{next(self._ids)}"
        return self._store(file_id, remote_path, data)

    def download(self, file_id: str) -> Iterator[bytes]:
        self.calls.append(("download", file_id))
        self._maybe_fail("download")
        if file_id not in self.content:
            raise RemoteNotFoundError(f"Not found: {file_id}")
        data = self.content[file_id]
        for i in range(0, len(data), self.chunk_size):
            yield data[i:i + self.chunk_size]

    def delete(self, file_id: str) -> None:
        self.calls.append(("delete", file_id))
        self._maybe_fail("delete")
        if file_id not in self.entries:
            raise RemoteNotFoundError(f"Not found: {file_id}")
        self._delete(file_id)

    def move(self, file_id: str, new_path: str) -> RemoteEntry:
        self.calls.append(("move", file_id))
        self._maybe_fail("move")
        if file_id not in self.entries:
            raise RemoteNotFoundError(f"Not found: {file_id}")
        old_path = self.entries[file_id].path
        prefix = old_path + "/"
        for fid, entry in list(self.entries.items()):
            if entry.path.startswith(prefix):
                self._journal(fid, path=new_path + "/" + entry.path[len(prefix):])
        return self._journal(file_id, path=new_path)

    def create_folder(self, remote_path: str) -> RemoteEntry:
        self.calls.append(("create_folder", remote_path))
        self._maybe_fail("create_folder")
        file_id = self._id_for(remote_path) or f"id-{next(self._ids)}"
        entry = RemoteEntry(
            file_id=file_id,
            path=remote_path,
            version_tag=f"v{next(self._versions)}",
            modified=time.time(),
            is_folder=True,
        )
        self.entries[file_id] = entry
        self.journal.append(RemoteChange(replace(entry)))
        return replace(entry)

    def get_delta(self, token: str | None) -> DeltaResult:
        self.calls.append(("get_delta", token or ""))
        self._maybe_fail("get_delta")
        if token is None:
            changes = [RemoteChange(replace(e)) for e in self.entries.values()]
            return DeltaResult(changes=changes, token=str(len(self.journal)))
        if self.expired:
            raise DeltaTokenExpiredError("Token expired")

        latest: dict[str, RemoteChange] = {}
        for change in self.journal[int(token):]:
            latest.pop(change.entry.file_id, None)
            latest[change.entry.file_id] = change
        return DeltaResult(changes=list(latest.values()), token=str(len(self.journal)))

    # === Internals ===

    def _maybe_fail(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _id_for(self, remote_path: str) -> str | None:
        for fid, entry in self.entries.items():
            if entry.path == remote_path:
                return fid
        return None

    def _store(self, file_id: str, remote_path: str, data: bytes) -> RemoteEntry:
        entry = RemoteEntry(
            file_id=file_id,
            path=remote_path,
            version_tag=f"v{next(self._versions)}",
            size=len(data),
            modified=time.time(),
            content_hash=hashlib.sha256(data).hexdigest(),
        )
        self.entries[file_id] = entry
        self.content[file_id] = data
        self.journal.append(RemoteChange(replace(entry)))
        return replace(entry)

    def _journal(self, file_id: str, **changes: Any) -> RemoteEntry:
        entry = replace(self.entries[file_id], **changes)
        self.entries[file_id] = entry
        self.journal.append(RemoteChange(replace(entry)))
        return replace(entry)

    def _delete(self, file_id: str) -> None:
        prefix = self.entries[file_id].path + "/"
        doomed = [file_id] + [
            fid for fid, e in self.entries.items() if e.path.startswith(prefix)
        ]
        for fid in doomed:
            entry = self.entries.pop(fid)
            self.content.pop(fid, None)
            self.journal.append(RemoteChange(entry, deleted=True))


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def sync_root(tmp_path: Path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def cache(tmp_path: Path) -> Iterator[CacheStore]:
    store = CacheStore(tmp_path / "cache")
    store.initialize()
    yield store
    store.shutdown()


@pytest.fixture
def make_engine(
    sync_root: Path,
    transport: InMemoryTransport,
    cache: CacheStore,
) -> Iterator[Callable[..., SyncEngine]]:
    """Factory for initialized engines; all are shut down after the test."""
    engines: list[SyncEngine] = []

    def _make(**kwargs: Any) -> SyncEngine:
        kwargs.setdefault("config", SyncConfig(initial_backoff=0.0, sync_interval=3600))
        engine = SyncEngine(sync_root, kwargs.pop("transport", transport), cache, **kwargs)
        engine.initialize()
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.stop()
