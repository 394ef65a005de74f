"""Cache commands for the cloudsync CLI.

Commands (``cloudsync cache ...``):
- stats: Show cache usage and hit rate
- clear: Remove cached files (pinned ones are kept unless --all)
- cleanup: Evict files by policy to free space
- pin / unpin: Pin or unpin one cached file
- pin-folder / unpin-folder: Pin or unpin a folder subtree
- verify: Check cached files against their records
- export / import: Dump or load cache metadata as JSON
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from cloudsync.cli.config import fail, format_size, open_cache
from cloudsync.core.config import AppSettings
from cloudsync.core.errors import CloudSyncError


def _folder_arg(path: str) -> str:
    return str(Path(path).expanduser().resolve())


@click.group()
def cache() -> None:
    """Manage the local file cache."""


@cache.command()
@click.pass_obj
def stats(settings: AppSettings) -> None:
    """Show cache usage and hit rate."""
    with open_cache(settings) as store:
        s = store.stats()
        click.echo(f"Size:          {format_size(s.total_size)} / {format_size(s.max_size)}")
        click.echo(f"Files:         {s.file_count}")
        click.echo(f"Pinned:        {s.pinned_count} ({format_size(s.pinned_size)})")
        click.echo(f"Hit rate:      {s.hit_rate:.1f}% ({s.hit_count} hits, {s.miss_count} misses)")
        click.echo(f"Policy:        {store.policy.value}")
        folders = store.pinned_folders()
        if folders:
            click.echo("Pinned folders:")
            for folder in folders:
                click.echo(f"  {folder}")


@cache.command()
@click.option("--all", "clear_all", is_flag=True, help="Also remove pinned files.")
@click.pass_obj
def clear(settings: AppSettings, clear_all: bool) -> None:
    """Remove cached files."""
    with open_cache(settings) as store:
        removed = store.clear(keep_pinned=not clear_all)
        click.echo(f"Removed {removed} cached files.")


@cache.command()
@click.option(
    "--target",
    type=int,
    default=0,
    show_default=True,
    help="Bytes to free (0 = whatever exceeds the maximum size).",
)
@click.pass_obj
def cleanup(settings: AppSettings, target: int) -> None:
    """Evict unpinned files by policy."""
    with open_cache(settings) as store:
        result = store.cleanup(target)
        click.echo(f"Evicted {len(result.evicted)} files, freed {format_size(result.freed)}.")
        if result.shortfall:
            click.echo(
                f"Could not free {format_size(result.shortfall)}: remaining files are pinned.",
                err=True,
            )


@cache.command()
@click.argument("file_id")
@click.pass_obj
def pin(settings: AppSettings, file_id: str) -> None:
    """Pin a cached file for offline access."""
    with open_cache(settings) as store:
        try:
            store.pin(file_id)
        except CloudSyncError as e:
            fail(str(e))
        click.echo(f"Pinned {file_id}")


@cache.command()
@click.argument("file_id")
@click.pass_obj
def unpin(settings: AppSettings, file_id: str) -> None:
    """Unpin a cached file."""
    with open_cache(settings) as store:
        try:
            store.unpin(file_id)
        except CloudSyncError as e:
            fail(str(e))
        click.echo(f"Unpinned {file_id}")


@cache.command("pin-folder")
@click.argument("path")
@click.pass_obj
def pin_folder(settings: AppSettings, path: str) -> None:
    """Keep every file under PATH resident."""
    folder = _folder_arg(path)
    with open_cache(settings) as store:
        store.pin_folder(folder)
        click.echo(f"Pinned folder {folder}")


@cache.command("unpin-folder")
@click.argument("path")
@click.pass_obj
def unpin_folder(settings: AppSettings, path: str) -> None:
    """Unpin a previously pinned folder."""
    folder = _folder_arg(path)
    with open_cache(settings) as store:
        try:
            store.unpin_folder(folder)
        except CloudSyncError as e:
            fail(str(e))
        click.echo(f"Unpinned folder {folder}")


@cache.command()
@click.option("--repair", is_flag=True, help="Drop broken entries and orphan files.")
@click.pass_obj
def verify(settings: AppSettings, repair: bool) -> None:
    """Check cached files against their records."""
    with open_cache(settings) as store:
        issues = store.verify(repair=repair)
    if issues == 0:
        click.echo("Cache OK.")
        return
    action = "repaired" if repair else "found"
    click.echo(f"{issues} issues {action}.")
    if not repair:
        sys.exit(1)


@cache.command("export")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def export_cmd(settings: AppSettings, output: Path) -> None:
    """Export cache metadata to OUTPUT as JSON."""
    with open_cache(settings) as store:
        count = store.export_metadata(output)
    click.echo(f"Exported {count} entries to {output}")


@cache.command("import")
@click.argument(
    "source",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.pass_obj
def import_cmd(settings: AppSettings, source: Path) -> None:
    """Import cache metadata from SOURCE."""
    with open_cache(settings) as store:
        count = store.import_metadata(source)
    click.echo(f"Imported {count} entries from {source}")
