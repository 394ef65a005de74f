"""Tests for the local file cache store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cloudsync.cache.persistence import SQLiteMetadataStore
from cloudsync.cache.store import CacheStore
from cloudsync.core.config import EvictionPolicy
from cloudsync.core.errors import EntryNotFoundError, NotAllowedError, NotInitializedError
from cloudsync.core.hashing import compute_hash
from conftest import FakeClock


def _source(tmp_path: Path, name: str, size: int) -> Path:
    path = tmp_path / "src" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> CacheStore:
    cache = CacheStore(tmp_path / "cache", max_size=1000, clock=clock)
    cache.initialize()
    return cache


class TestLifecycle:
    """Tests for initialize/shutdown."""

    def test_requires_initialize(self, tmp_path: Path) -> None:
        """Every operation should fail before initialize()."""
        cache = CacheStore(tmp_path / "cache")
        with pytest.raises(NotInitializedError):
            cache.get("id")
        with pytest.raises(NotInitializedError):
            cache.put("id", _source(tmp_path, "a", 1), "/a")
        with pytest.raises(NotInitializedError):
            cache.stats()
        with pytest.raises(NotInitializedError):
            cache.set_max_size(10)
        with pytest.raises(NotInitializedError):
            cache.set_eviction_policy(EvictionPolicy.SIZE)

    def test_initialize_creates_directory(self, tmp_path: Path) -> None:
        cache = CacheStore(tmp_path / "deep" / "cache")
        cache.initialize()
        assert (tmp_path / "deep" / "cache").is_dir()
        assert cache.is_initialized

    def test_shutdown_persists_and_reloads(self, tmp_path: Path) -> None:
        """Entries and pinned folders should survive a restart."""
        db = SQLiteMetadataStore(tmp_path / "state.db")
        cache = CacheStore(tmp_path / "cache", store=db)
        cache.initialize()
        cache.put("id-1", _source(tmp_path, "a", 10), "/sync/a", pinned=True)
        cache.pin_folder("/sync/docs")
        cache.shutdown()
        assert not cache.is_initialized

        reopened = CacheStore(tmp_path / "cache", store=db)
        reopened.initialize()
        assert reopened.is_cached("id-1")
        assert reopened.get_entry("id-1").pinned is True
        assert reopened.pinned_folders() == ["/sync/docs"]
        assert reopened.current_size == 10
        db.close()


class TestPutGet:
    """Tests for content operations."""

    def test_put_records_entry(self, store: CacheStore, tmp_path: Path) -> None:
        """put() should copy content and record size and checksum."""
        source = _source(tmp_path, "a.txt", 100)
        entry = store.put("id-1", source, "/sync/a.txt", version_tag="v1")

        assert entry.size == 100
        assert entry.checksum == compute_hash(b"x" * 100)
        assert entry.version_tag == "v1"
        assert Path(entry.cache_path).read_bytes() == source.read_bytes()
        assert store.current_size == 100

    def test_put_replaces_existing(self, store: CacheStore, tmp_path: Path) -> None:
        """Re-putting an id should replace the entry, not double-count it."""
        store.put("id-1", _source(tmp_path, "a", 100), "/sync/a")
        store.put("id-1", _source(tmp_path, "b", 40), "/sync/a")
        assert store.current_size == 40
        assert store.stats().file_count == 1

    def test_unsafe_id_sanitized(self, store: CacheStore, tmp_path: Path) -> None:
        """Identifiers with path separators stay inside the cache directory."""
        entry = store.put("../../etc/passwd", _source(tmp_path, "a", 1), "/sync/a")
        assert Path(entry.cache_path).parent == store.cache_dir

    def test_similar_ids_do_not_share_a_file(self, store: CacheStore, tmp_path: Path) -> None:
        """Ids differing only in punctuation keep separate cached copies."""
        first = store.put("doc!1", _source(tmp_path, "a", 4), "/sync/a")
        second = store.put("doc?1", _source(tmp_path, "b", 2), "/sync/b")
        assert first.cache_path != second.cache_path

        store.evict("doc?1")

        path = store.get("doc!1")
        assert path is not None
        assert path.read_bytes() == b"x" * 4
        assert store.current_size == 4
        assert store.verify() == 0

    def test_get_hit_touches_entry(
        self, store: CacheStore, tmp_path: Path, clock: FakeClock
    ) -> None:
        """A hit should refresh last access and count."""
        store.put("id-1", _source(tmp_path, "a", 10), "/sync/a")
        clock.advance(50)

        path = store.get("id-1")

        assert path is not None and path.exists()
        entry = store.get_entry("id-1")
        assert entry.last_access == clock.now
        assert entry.access_count == 2

    def test_hit_rate(self, store: CacheStore, tmp_path: Path) -> None:
        """hit_rate = hits / (hits + misses) * 100."""
        assert store.stats().hit_rate == 0.0
        store.put("id-1", _source(tmp_path, "a", 10), "/sync/a")
        store.get("id-1")
        store.get("id-1")
        store.get("id-1")
        store.get("missing")

        stats = store.stats()
        assert stats.hit_count == 3
        assert stats.miss_count == 1
        assert stats.hit_rate == 75.0

    def test_get_entry_unknown(self, store: CacheStore) -> None:
        with pytest.raises(EntryNotFoundError):
            store.get_entry("missing")

    def test_update_entry(self, store: CacheStore, tmp_path: Path) -> None:
        store.put("id-1", _source(tmp_path, "a", 10), "/sync/a", version_tag="v1")
        store.update_entry("id-1", version_tag="v2", original_path="/sync/b")
        entry = store.get_entry("id-1")
        assert entry.version_tag == "v2"
        assert entry.original_path == "/sync/b"


class TestPinning:
    """Tests for pin/unpin and pinned folders."""

    def test_pin_unknown(self, store: CacheStore) -> None:
        with pytest.raises(EntryNotFoundError):
            store.pin("missing")

    def test_evict_pinned_refused(self, store: CacheStore, tmp_path: Path) -> None:
        """Explicit eviction of a pinned entry should be refused."""
        store.put("id-1", _source(tmp_path, "a", 10), "/sync/a")
        store.pin("id-1")
        with pytest.raises(NotAllowedError):
            store.evict("id-1")

        store.unpin("id-1")
        store.evict("id-1")
        assert not store.is_cached("id-1")
        assert store.current_size == 0

    def test_folder_pin_is_component_aware(self, store: CacheStore) -> None:
        """/sync/doc must not match a file under /sync/docs."""
        store.pin_folder("/sync/doc/")
        assert store.is_folder_pinned("/sync/doc")
        assert store.is_folder_pinned("/sync/doc/a.txt")
        assert not store.is_folder_pinned("/sync/docs/a.txt")

    def test_evict_under_pinned_folder_refused(self, store: CacheStore, tmp_path: Path) -> None:
        store.put("id-1", _source(tmp_path, "a", 10), "/sync/docs/a")
        store.pin_folder("/sync/docs")
        with pytest.raises(NotAllowedError):
            store.evict("id-1")

    def test_unpin_folder_not_pinned(self, store: CacheStore) -> None:
        with pytest.raises(EntryNotFoundError):
            store.unpin_folder("/sync/nothing")

    def test_forget_ignores_pins(self, store: CacheStore, tmp_path: Path) -> None:
        """forget() removes an entry even when pinned."""
        store.put("id-1", _source(tmp_path, "a", 10), "/sync/a", pinned=True)
        assert store.forget("id-1") is True
        assert store.forget("id-1") is False
        assert store.current_size == 0


class TestEviction:
    """Tests for cleanup and automatic eviction."""

    def test_put_over_limit_evicts_lru(
        self, store: CacheStore, tmp_path: Path, clock: FakeClock
    ) -> None:
        """Exceeding max_size should evict the least recently used entry."""
        store.put("old", _source(tmp_path, "a", 400), "/sync/a")
        clock.advance(1)
        store.put("mid", _source(tmp_path, "b", 400), "/sync/b")
        clock.advance(1)
        store.put("new", _source(tmp_path, "c", 400), "/sync/c")

        assert not store.is_cached("old")
        assert store.is_cached("mid")
        assert store.is_cached("new")
        assert store.current_size == 800

    def test_put_never_evicts_new_entry(self, store: CacheStore, tmp_path: Path) -> None:
        """The entry just put stays even when it alone exceeds the limit."""
        store.put("big", _source(tmp_path, "a", 1500), "/sync/a")
        assert store.is_cached("big")

    def test_cleanup_skips_pinned(
        self, store: CacheStore, tmp_path: Path, clock: FakeClock
    ) -> None:
        """Pinned entries survive cleanup; the shortfall is reported."""
        store.put("pinned", _source(tmp_path, "a", 300), "/sync/a", pinned=True)
        clock.advance(1)
        store.put("loose", _source(tmp_path, "b", 300), "/sync/b")

        result = store.cleanup(500)

        assert result.evicted == ["loose"]
        assert result.freed == 300
        assert result.shortfall == 200
        assert store.is_cached("pinned")

    def test_cleanup_zero_target_frees_overflow(
        self, store: CacheStore, tmp_path: Path, clock: FakeClock
    ) -> None:
        store.put("a", _source(tmp_path, "a", 300), "/sync/a")
        clock.advance(1)
        store.put("b", _source(tmp_path, "b", 300), "/sync/b")
        store.set_max_size(400)

        result = store.cleanup()

        assert result.target == 200
        assert result.evicted == ["a"]
        assert store.current_size == 300

    def test_set_eviction_policy(
        self, store: CacheStore, tmp_path: Path, clock: FakeClock
    ) -> None:
        """SIZE policy should evict the largest entry first."""
        store.put("small", _source(tmp_path, "a", 100), "/sync/a")
        clock.advance(1)
        store.put("large", _source(tmp_path, "b", 500), "/sync/b")
        store.set_eviction_policy(EvictionPolicy.SIZE)

        result = store.cleanup(50)

        assert result.evicted == ["large"]
        assert store.policy is EvictionPolicy.SIZE

    def test_clear(self, store: CacheStore, tmp_path: Path) -> None:
        """clear() keeps pinned entries unless told otherwise."""
        store.put("a", _source(tmp_path, "a", 10), "/sync/a", pinned=True)
        store.put("b", _source(tmp_path, "b", 10), "/sync/docs/b")
        store.put("c", _source(tmp_path, "c", 10), "/sync/c")
        store.pin_folder("/sync/docs")

        assert store.clear() == 1
        assert store.current_size == 20
        assert store.clear(keep_pinned=False) == 2
        assert store.current_size == 0

    def test_size_invariant(self, store: CacheStore, tmp_path: Path) -> None:
        """current_size always equals the sum of entry sizes."""
        for i in range(6):
            store.put(f"id-{i}", _source(tmp_path, f"f{i}", 150 + i), f"/sync/f{i}")
        store.evict("id-5")
        store.cleanup(200)
        assert store.current_size == sum(e.size for e in store.entries())


class TestMaintenance:
    """Tests for verify and metadata export/import."""

    def test_verify_clean(self, store: CacheStore, tmp_path: Path) -> None:
        store.put("a", _source(tmp_path, "a", 10), "/sync/a")
        assert store.verify() == 0

    def test_verify_detects_and_repairs(self, store: CacheStore, tmp_path: Path) -> None:
        """Missing, corrupted and orphan files are issues; repair fixes them."""
        missing = store.put("missing", _source(tmp_path, "a", 10), "/sync/a")
        corrupt = store.put("corrupt", _source(tmp_path, "b", 10), "/sync/b")
        store.put("ok", _source(tmp_path, "c", 10), "/sync/c")
        Path(missing.cache_path).unlink()
        Path(corrupt.cache_path).write_bytes(b"y" * 10)
        (store.cache_dir / "stray").write_bytes(b"z")

        assert store.verify() == 3
        assert store.verify(repair=True) == 3
        assert store.verify() == 0
        assert [e.file_id for e in store.entries()] == ["ok"]
        assert store.current_size == 10

    def test_export_import(self, tmp_path: Path, clock: FakeClock) -> None:
        """Imported metadata should match the export; absent files are skipped."""
        cache_dir = tmp_path / "cache"
        first = CacheStore(cache_dir, clock=clock)
        first.initialize()
        first.put("a", _source(tmp_path, "a", 10), "/sync/a", pinned=True)
        gone = first.put("b", _source(tmp_path, "b", 20), "/sync/b")
        first.pin_folder("/sync/docs")
        out = tmp_path / "export.json"

        assert first.export_metadata(out) == 2
        assert len(json.loads(out.read_text())["entries"]) == 2
        Path(gone.cache_path).unlink()

        second = CacheStore(cache_dir, clock=clock)
        second.initialize()
        assert second.import_metadata(out) == 1
        assert second.get_entry("a").pinned is True
        assert second.pinned_folders() == ["/sync/docs"]
        assert second.current_size == 10
