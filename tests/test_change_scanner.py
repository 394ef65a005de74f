"""Tests for local and remote change scanners."""

from __future__ import annotations

import os
from pathlib import Path

from cloudsync.core.hashing import compute_hash
from cloudsync.sync.change_scanner import (
    LocalChangeScanner,
    RemoteChangeScanner,
    to_local_path,
    to_remote_path,
)
from cloudsync.sync.filters import PathFilter
from cloudsync.sync.state import SyncState
from cloudsync.sync.types import ChangeSource, SyncOperation, SyncRecord
from conftest import InMemoryTransport


def _track(state: SyncState, root: Path, rel: str, file_id: str, data: bytes | None = None,
           version_tag: str = "v0") -> SyncRecord:
    """Record ``rel`` as synced with the content currently on disk (or ``data``)."""
    path = root / rel
    record = SyncRecord(
        file_id=file_id,
        local_path=str(path),
        remote_path="/" + rel,
        version_tag=version_tag,
        is_folder=path.is_dir(),
    )
    if path.is_file():
        stat = path.stat()
        record.content_hash = compute_hash(path.read_bytes())
        record.local_mtime = stat.st_mtime
        record.size = stat.st_size
    elif data is not None:
        record.content_hash = compute_hash(data)
        record.size = len(data)
    state.put(record)
    return record


def test_path_mapping(sync_root: Path) -> None:
    local = sync_root / "docs" / "a.txt"
    assert to_remote_path(sync_root, local) == "/docs/a.txt"
    assert to_local_path(sync_root, "/docs/a.txt") == local


class TestLocalChangeScanner:
    """Tests for LocalChangeScanner."""

    def _scanner(self, root: Path, state: SyncState) -> LocalChangeScanner:
        return LocalChangeScanner(root, state, PathFilter())

    def test_new_files_and_folders(self, sync_root: Path) -> None:
        (sync_root / "docs").mkdir()
        (sync_root / "docs" / "a.txt").write_text("a")
        (sync_root / "b.txt").write_text("bb")

        items = self._scanner(sync_root, SyncState()).scan()

        assert [(i.operation, i.remote_path) for i in items] == [
            (SyncOperation.CREATE_FOLDER, "/docs"),
            (SyncOperation.UPLOAD, "/b.txt"),
            (SyncOperation.UPLOAD, "/docs/a.txt"),
        ]
        assert all(i.source is ChangeSource.LOCAL for i in items)
        assert items[1].size == 2

    def test_hidden_files_ignored(self, sync_root: Path) -> None:
        (sync_root / ".secret").write_text("x")
        (sync_root / "a.txt.part").write_text("x")
        assert self._scanner(sync_root, SyncState()).scan() == []

    def test_unchanged_file(self, sync_root: Path) -> None:
        (sync_root / "a.txt").write_text("a")
        state = SyncState()
        _track(state, sync_root, "a.txt", "id-1")
        assert self._scanner(sync_root, state).scan() == []

    def test_modified_file(self, sync_root: Path) -> None:
        path = sync_root / "a.txt"
        path.write_text("a")
        state = SyncState()
        _track(state, sync_root, "a.txt", "id-1")
        path.write_text("changed")

        items = self._scanner(sync_root, state).scan()

        assert len(items) == 1
        assert items[0].operation is SyncOperation.UPDATE
        assert items[0].file_id == "id-1"
        assert items[0].local_hash == compute_hash(b"changed")

    def test_touched_file_updates_record(self, sync_root: Path) -> None:
        """Same content with a new mtime is not a change."""
        path = sync_root / "a.txt"
        path.write_text("a")
        state = SyncState()
        _track(state, sync_root, "a.txt", "id-1")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 100))

        assert self._scanner(sync_root, state).scan() == []
        assert state.get(str(path)).local_mtime == path.stat().st_mtime  # type: ignore[union-attr]

    def test_deleted_folder_reported_once(self, sync_root: Path) -> None:
        state = SyncState()
        _track(state, sync_root, "docs/a.txt", "id-2", data=b"a")
        state.put(SyncRecord(
            file_id="id-1",
            local_path=str(sync_root / "docs"),
            remote_path="/docs",
            is_folder=True,
        ))

        items = self._scanner(sync_root, state).scan()

        assert [(i.operation, i.file_id) for i in items] == [(SyncOperation.DELETE, "id-1")]
        assert items[0].is_folder

    def test_move_detected_by_content(self, sync_root: Path) -> None:
        state = SyncState()
        _track(state, sync_root, "old.txt", "id-1", data=b"moved content")
        (sync_root / "new.txt").write_bytes(b"moved content")

        items = self._scanner(sync_root, state).scan()

        assert len(items) == 1
        assert items[0].operation is SyncOperation.MOVE
        assert items[0].file_id == "id-1"
        assert items[0].previous_path == str(sync_root / "old.txt")
        assert items[0].remote_path == "/new.txt"

    def test_scoped_scan(self, sync_root: Path) -> None:
        (sync_root / "docs").mkdir()
        (sync_root / "docs" / "a.txt").write_text("a")
        (sync_root / "b.txt").write_text("b")
        state = SyncState()
        _track(state, sync_root, "gone.txt", "id-9", data=b"x")

        items = self._scanner(sync_root, state).scan(sync_root / "docs")

        assert [i.remote_path for i in items] == ["/docs", "/docs/a.txt"]

    def test_non_recursive_scan(self, sync_root: Path) -> None:
        (sync_root / "docs" / "sub").mkdir(parents=True)
        (sync_root / "docs" / "sub" / "deep.txt").write_text("d")
        (sync_root / "top.txt").write_text("t")

        items = self._scanner(sync_root, SyncState()).scan(recursive=False)

        assert {i.remote_path for i in items} == {"/docs", "/top.txt"}


class TestRemoteChangeScanner:
    """Tests for RemoteChangeScanner."""

    def _scanner(self, transport: InMemoryTransport, root: Path, state: SyncState) -> RemoteChangeScanner:
        return RemoteChangeScanner(transport, root, state, PathFilter())

    def test_initial_full_scan(self, transport: InMemoryTransport, sync_root: Path) -> None:
        entry = transport.put_remote("/a.txt", b"hello")
        state = SyncState()
        _track(state, sync_root, "stale.txt", "id-gone", data=b"x")

        result = self._scanner(transport, sync_root, state).scan(None)

        assert result.full
        assert result.token == str(len(transport.journal))
        ops = {(i.operation, i.file_id) for i in result.items}
        assert ops == {(SyncOperation.DOWNLOAD, entry.file_id), (SyncOperation.DELETE, "id-gone")}
        download = next(i for i in result.items if i.operation is SyncOperation.DOWNLOAD)
        assert download.local_path == str(sync_root / "a.txt")
        assert download.remote_hash == entry.content_hash
        assert download.source is ChangeSource.REMOTE

    def test_incremental_changes(self, transport: InMemoryTransport, sync_root: Path) -> None:
        entry = transport.put_remote("/a.txt", b"one")
        state = SyncState()
        _track(state, sync_root, "a.txt", entry.file_id, data=b"one", version_tag=entry.version_tag)
        token = str(len(transport.journal))

        updated = transport.put_remote("/a.txt", b"two")
        result = self._scanner(transport, sync_root, state).scan(token)

        assert not result.full
        assert [(i.operation, i.version_tag) for i in result.items] == [
            (SyncOperation.UPDATE, updated.version_tag)
        ]

    def test_same_version_is_not_a_change(self, transport: InMemoryTransport, sync_root: Path) -> None:
        entry = transport.put_remote("/a.txt", b"one")
        state = SyncState()
        _track(state, sync_root, "a.txt", entry.file_id, data=b"one", version_tag=entry.version_tag)

        assert self._scanner(transport, sync_root, state).scan(None).items == []

    def test_remote_move(self, transport: InMemoryTransport, sync_root: Path) -> None:
        entry = transport.put_remote("/a.txt", b"one")
        state = SyncState()
        _track(state, sync_root, "a.txt", entry.file_id, data=b"one", version_tag=entry.version_tag)
        token = str(len(transport.journal))
        transport.move(entry.file_id, "/b.txt")

        items = self._scanner(transport, sync_root, state).scan(token).items

        assert len(items) == 1
        assert items[0].operation is SyncOperation.MOVE
        assert items[0].previous_path == str(sync_root / "a.txt")
        assert items[0].local_path == str(sync_root / "b.txt")

    def test_remote_delete(self, transport: InMemoryTransport, sync_root: Path) -> None:
        entry = transport.put_remote("/a.txt", b"one")
        state = SyncState()
        _track(state, sync_root, "a.txt", entry.file_id, data=b"one", version_tag=entry.version_tag)
        token = str(len(transport.journal))
        transport.remove_remote("/a.txt")

        items = self._scanner(transport, sync_root, state).scan(token).items

        assert [(i.operation, i.source) for i in items] == [
            (SyncOperation.DELETE, ChangeSource.REMOTE)
        ]

    def test_expired_token_falls_back_to_full(self, transport: InMemoryTransport, sync_root: Path) -> None:
        transport.put_remote("/a.txt", b"one")
        transport.expired = True

        result = self._scanner(transport, sync_root, SyncState()).scan("3")

        assert result.full
        assert [i.operation for i in result.items] == [SyncOperation.DOWNLOAD]
        assert transport.calls[-2:] == [("get_delta", "3"), ("get_delta", "")]

    def test_filtered_remote_paths(self, transport: InMemoryTransport, sync_root: Path) -> None:
        transport.put_remote("/.hidden", b"x")
        assert self._scanner(transport, sync_root, SyncState()).scan(None).items == []
