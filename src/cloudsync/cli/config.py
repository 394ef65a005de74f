"""Shared helpers for cloudsync CLI commands.

Builds the cache and engine from the settings file, and formats values for
display.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager

import click

from cloudsync.cache.persistence import SQLiteMetadataStore
from cloudsync.cache.store import CacheStore
from cloudsync.core.config import AppSettings
from cloudsync.sync.engine import SyncEngine
from cloudsync.sync.transport import FolderTransport


def format_size(size_bytes: int) -> str:
    """Format size in bytes to human-readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    if size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@contextmanager
def open_cache(settings: AppSettings) -> Iterator[CacheStore]:
    """Open the cache described by ``settings`` and persist it on exit."""
    store = SQLiteMetadataStore(settings.state_db)
    cache = CacheStore(
        settings.cache_dir,
        store=store,
        max_size=settings.sync.cache_max_size,
        policy=settings.sync.eviction_policy,
    )
    try:
        cache.initialize()
        yield cache
    finally:
        cache.shutdown()
        store.close()


@contextmanager
def open_engine(settings: AppSettings) -> Iterator[SyncEngine]:
    """Build an initialized engine for ``settings``; shut down on exit."""
    store = SQLiteMetadataStore(settings.state_db)
    cache = CacheStore(settings.cache_dir, store=store)
    engine = SyncEngine(
        settings.sync_root,
        FolderTransport(settings.remote_root),
        cache,
        store=store,
        config=settings.sync,
    )
    try:
        engine.initialize()
        yield engine
    finally:
        engine.shutdown()
        store.close()
