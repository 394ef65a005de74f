"""Configuration for cloudsync.

This module provides:
- SyncDirection, ConflictMode, NetworkClass, EvictionPolicy: configuration enums
- SyncConfig: immutable snapshot of sync/cache settings for one run
- AppSettings: process-level paths plus the SyncConfig, stored as JSON
- load_settings / save_settings: JSON config file helpers
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_MAX_RETRIES = 3
DEFAULT_SYNC_INTERVAL = 300  # 5 minutes
DEFAULT_CACHE_MAX_SIZE = 1024 * 1024 * 1024  # 1 GiB


class SyncDirection(str, Enum):
    """Which way changes flow."""

    BIDIRECTIONAL = "bidirectional"
    DOWNLOAD_ONLY = "download_only"
    UPLOAD_ONLY = "upload_only"


class ConflictMode(str, Enum):
    """How a detected conflict is resolved."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    RENAME = "rename"
    ASK = "ask"


class NetworkClass(str, Enum):
    """Network restriction for transfers.

    ANY allows every link; UNMETERED only syncs on unmetered links
    (the "Wi-Fi only" switch).
    """

    ANY = "any"
    UNMETERED = "unmetered"


class EvictionPolicy(str, Enum):
    """Order in which unpinned cache entries are reclaimed."""

    LRU = "lru"  # Least recently used first
    LFU = "lfu"  # Least frequently used first
    FIFO = "fifo"  # Oldest insertion first
    SIZE = "size"  # Largest first


@dataclass(frozen=True)
class SyncConfig:
    """Immutable sync configuration snapshot.

    Owned by the engine and replaced wholesale on reconfiguration.
    Use :meth:`replace` to derive a modified copy.
    """

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_mode: ConflictMode = ConflictMode.ASK
    sync_hidden_files: bool = False
    sync_system_files: bool = False
    sync_attributes: bool = True
    max_retries: int = DEFAULT_MAX_RETRIES
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    bandwidth_limit: int = 0  # bytes/sec, 0 = unlimited
    network_class: NetworkClass = NetworkClass.ANY
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    cache_max_size: int = DEFAULT_CACHE_MAX_SIZE
    eviction_policy: EvictionPolicy = EvictionPolicy.LRU
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        """Validate values and coerce list-like pattern fields to tuples."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.sync_interval <= 0:
            raise ValueError("sync_interval must be > 0")
        if self.bandwidth_limit < 0:
            raise ValueError("bandwidth_limit must be >= 0")
        if self.cache_max_size < 0:
            raise ValueError("cache_max_size must be >= 0")
        # frozen dataclass: bypass __setattr__ for normalization
        object.__setattr__(self, "include_patterns", tuple(self.include_patterns))
        object.__setattr__(self, "exclude_patterns", tuple(self.exclude_patterns))

    def replace(self, **changes: Any) -> SyncConfig:
        """Return a new config with the given fields changed."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a config from a JSON-compatible dict.

        Unknown keys are ignored so older config files keep loading.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        enum_fields = {
            "direction": SyncDirection,
            "conflict_mode": ConflictMode,
            "network_class": NetworkClass,
            "eviction_policy": EvictionPolicy,
        }
        for name, enum_type in enum_fields.items():
            if name in values:
                values[name] = enum_type(values[name])

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data = dataclasses.asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, tuple):
                data[key] = list(value)
        return data


@dataclass
class AppSettings:
    """Process-level settings: where things live, plus the sync config.

    Attributes:
        sync_root: Local folder kept in sync.
        remote_root: Folder used by the folder-backed transport.
        cache_dir: Directory holding cached file copies.
        state_db: SQLite database for cache and sync metadata.
        sync: The sync configuration snapshot.
    """

    sync_root: Path
    remote_root: Path
    cache_dir: Path
    state_db: Path
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def defaults(cls, base_dir: Path | None = None) -> AppSettings:
        """Default settings rooted at ``~/.cloudsync``."""
        base = base_dir or get_config_dir()
        return cls(
            sync_root=Path.home() / "CloudSync",
            remote_root=base / "remote",
            cache_dir=base / "cache",
            state_db=base / "state.db",
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> AppSettings:
        """Build settings from a dict, falling back to defaults for missing paths."""
        defaults = cls.defaults(base_dir)

        def _path(key: str, default: Path) -> Path:
            value = data.get(key)
            return Path(value).expanduser() if value else default

        return cls(
            sync_root=_path("sync_root", defaults.sync_root),
            remote_root=_path("remote_root", defaults.remote_root),
            cache_dir=_path("cache_dir", defaults.cache_dir),
            state_db=_path("state_db", defaults.state_db),
            sync=SyncConfig.from_dict(data.get("sync", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "sync_root": str(self.sync_root),
            "remote_root": str(self.remote_root),
            "cache_dir": str(self.cache_dir),
            "state_db": str(self.state_db),
            "sync": self.sync.to_dict(),
        }


def get_config_dir() -> Path:
    """Get the configuration directory for cloudsync.

    Returns:
        Path to ~/.cloudsync.
    """
    return Path.home() / ".cloudsync"


def get_settings_file() -> Path:
    """Get the path to the settings file."""
    return get_config_dir() / "config.json"


def load_settings(path: Path | None = None) -> AppSettings:
    """Load settings from a JSON file (defaults when it does not exist)."""
    settings_file = path or get_settings_file()
    base_dir = settings_file.parent
    if settings_file.exists():
        return AppSettings.from_dict(json.loads(settings_file.read_text()), base_dir)
    return AppSettings.defaults(base_dir)


def save_settings(settings: AppSettings, path: Path | None = None) -> None:
    """Save settings to a JSON file."""
    settings_file = path or get_settings_file()
    settings_file.parent.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(json.dumps(settings.to_dict(), indent=2))
