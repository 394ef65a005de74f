"""Sync commands for the cloudsync CLI.

Commands:
- sync: Synchronize the sync folder with the remote folder
- status: Show the synced state and cache usage
"""

from __future__ import annotations

import sys
import time
from datetime import datetime
from pathlib import Path

import click

from cloudsync.cli.config import fail, format_size, open_cache, open_engine
from cloudsync.core.config import AppSettings, ConflictMode
from cloudsync.core.errors import CloudSyncError
from cloudsync.sync.conflict import RESOLUTION_CHOICES
from cloudsync.sync.engine import SyncEngine
from cloudsync.sync.filters import PathFilter
from cloudsync.sync.types import (
    ConflictNotice,
    ProgressEvent,
    SyncCompleteEvent,
    SyncItemStatus,
    SyncOperation,
)
from cloudsync.sync.watcher import FileChange, FileWatcher

ARROWS = {
    SyncOperation.UPLOAD: "↑",
    SyncOperation.DOWNLOAD: "↓",
    SyncOperation.UPDATE: "↕",
    SyncOperation.DELETE: "✗",
    SyncOperation.MOVE: "→",
    SyncOperation.CREATE_FOLDER: "+",
}

SKIP_CHOICE = "skip"


def _relative(root: Path, path: str) -> str:
    try:
        return Path(path).relative_to(root).as_posix()
    except ValueError:
        return path


def _attach_output(engine: SyncEngine, root: Path, watch: bool) -> None:
    """Echo finished items, failures and pass summaries."""

    def on_progress(event: ProgressEvent) -> None:
        item = event.item
        if event.status is SyncItemStatus.COMPLETED:
            arrow = ARROWS.get(item.operation, "•")
            click.echo(f"  {arrow} {_relative(root, item.local_path)}")
        elif event.status is SyncItemStatus.ERROR and event.error:
            click.echo(f"  ! {_relative(root, item.local_path)}: {event.error}", err=True)

    def on_complete(event: SyncCompleteEvent) -> None:
        if event.total == 0:
            click.echo("Everything is up to date.")
            return
        click.echo(
            f"Sync complete: {event.completed} completed, "
            f"{event.failed} failed, {event.conflicts} conflicts"
        )

    def on_conflict(notice: ConflictNotice) -> None:
        if watch:
            click.echo(
                click.style("  Conflict: ", fg="yellow")
                + _relative(root, notice.item.local_path)
            )

    engine.observers.add_progress(on_progress)
    engine.observers.add_complete(on_complete)
    engine.observers.add_conflict(on_conflict)


def _ask_conflicts(engine: SyncEngine, root: Path) -> bool:
    """Prompt for each held conflict. Returns True if any was resolved."""
    resolved = False
    for item in engine.pending_conflicts():
        choice = click.prompt(
            f"Conflict on {_relative(root, item.local_path)}",
            type=click.Choice([*RESOLUTION_CHOICES, SKIP_CHOICE]),
            default=ConflictMode.RENAME.value,
        )
        if choice == SKIP_CHOICE:
            engine.dismiss_conflict(item.key)
        else:
            engine.resolve_conflict(item.key, ConflictMode(choice))
            resolved = True
    return resolved


@click.command()
@click.option("--full", is_flag=True, help="Enumerate the remote folder fully.")
@click.option("--watch", "-w", is_flag=True, help="Watch for changes and sync continuously.")
@click.pass_obj
def sync(settings: AppSettings, full: bool, watch: bool) -> None:
    """Synchronize the sync folder with the remote folder.

    Uploads local changes and downloads remote changes.
    Use --watch to continuously monitor for changes.
    """
    sync_root = settings.sync_root
    if not sync_root.exists():
        sync_root.mkdir(parents=True)
        click.echo(f"Created sync folder: {sync_root}")

    click.echo(f"Syncing {sync_root} with {settings.remote_root}...")

    try:
        with open_engine(settings) as engine:
            root = sync_root.resolve()
            _attach_output(engine, root, watch)

            if not watch:
                stats = engine.run_once(full=full)
                if engine.pending_conflicts() and _ask_conflicts(engine, root):
                    stats = engine.run_once()
                if stats.failed_items:
                    sys.exit(1)
                return

            def on_changes(changes: list[FileChange]) -> None:
                engine.request_local_scan()

            watcher = FileWatcher(
                sync_root,
                on_changes,
                path_filter=PathFilter.from_config(settings.sync),
            )
            if full:
                engine.sync_now(full=True)
            engine.start()
            watcher.start()
            click.echo("\nWatching for changes... (Ctrl+C to stop)\n")
            try:
                while True:
                    time.sleep(1.0)
            except KeyboardInterrupt:
                click.echo("\nStopping...")
            finally:
                watcher.stop()
    except CloudSyncError as e:
        fail(str(e))


@click.command()
@click.pass_obj
def status(settings: AppSettings) -> None:
    """Show the synced state and cache usage."""
    try:
        with open_engine(settings) as engine:
            state = engine.sync_state
            click.echo(f"Sync folder:   {settings.sync_root}")
            click.echo(f"Remote folder: {settings.remote_root}")
            click.echo(f"State:         {engine.state.value}")
            click.echo(f"Direction:     {settings.sync.direction.value}")
            click.echo(f"Conflicts:     {settings.sync.conflict_mode.value}")
            if state.last_sync_time:
                last = datetime.fromtimestamp(state.last_sync_time)
                click.echo(f"Last sync:     {last:%Y-%m-%d %H:%M:%S}")
            else:
                click.echo("Last sync:     never")
            click.echo(f"Tracked items: {len(state)}")
    except (CloudSyncError, ValueError) as e:
        fail(str(e))

    with open_cache(settings) as cache:
        stats = cache.stats()
        click.echo(
            f"Cache:         {format_size(stats.total_size)} / {format_size(stats.max_size)} "
            f"({stats.file_count} files, {stats.pinned_count} pinned)"
        )
