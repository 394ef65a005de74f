"""Path filtering for sync scanners.

This module provides:
- PathFilter: Applies include/exclude globs and hidden/system-file flags
- SYSTEM_FILE_NAMES: Names treated as operating-system files
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable

from cloudsync.core.config import SyncConfig

# Files the OS or desktop shell creates on its own
SYSTEM_FILE_NAMES = frozenset({
    ".DS_Store",
    ".Spotlight-V100",
    ".Trashes",
    ".fseventsd",
    "Thumbs.db",
    "ehthumbs.db",
    "desktop.ini",
    "$RECYCLE.BIN",
    "System Volume Information",
})

# Transient files never worth syncing, whatever the configuration
ALWAYS_EXCLUDED = (
    "*.part",
    "*.tmp",
    "~$*",
)


class PathFilter:
    """Decides which relative paths the scanners may emit items for."""

    def __init__(
        self,
        include_patterns: Iterable[str] = (),
        exclude_patterns: Iterable[str] = (),
        sync_hidden: bool = False,
        sync_system: bool = False,
    ) -> None:
        """Initialize with pattern sets.

        Args:
            include_patterns: Globs a file must match (empty = everything).
            exclude_patterns: Globs that exclude a file or directory.
            sync_hidden: Include dot-files and dot-directories.
            sync_system: Include OS-generated files.
        """
        self._include = list(include_patterns)
        self._exclude = list(ALWAYS_EXCLUDED) + list(exclude_patterns)
        self._sync_hidden = sync_hidden
        self._sync_system = sync_system

    @classmethod
    def from_config(cls, config: SyncConfig) -> PathFilter:
        """Build a filter from a sync configuration snapshot."""
        return cls(
            include_patterns=config.include_patterns,
            exclude_patterns=config.exclude_patterns,
            sync_hidden=config.sync_hidden_files,
            sync_system=config.sync_system_files,
        )

    def accepts(self, rel_path: str, is_dir: bool = False) -> bool:
        """Check if a path should be synced.

        Args:
            rel_path: Path relative to the sync root, "/" separated.
            is_dir: Path is a directory (include patterns only apply to files).

        Returns:
            True if the path passes every filter.
        """
        rel_path = rel_path.strip("/")
        if not rel_path:
            return True

        parts = rel_path.split("/")
        name = parts[-1]

        if not self._sync_hidden and any(p.startswith(".") for p in parts):
            return False

        if not self._sync_system and any(p in SYSTEM_FILE_NAMES for p in parts):
            return False

        for pattern in self._exclude:
            if fnmatch.fnmatch(rel_path, pattern) or fnmatch.fnmatch(name, pattern):
                return False
            # Excluding a directory excludes its subtree
            if any(fnmatch.fnmatch(p, pattern) for p in parts[:-1]):
                return False

        if self._include and not is_dir:
            return any(
                fnmatch.fnmatch(rel_path, pattern) or fnmatch.fnmatch(name, pattern)
                for pattern in self._include
            )

        return True
