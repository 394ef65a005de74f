"""Eviction candidate selection for the file cache.

This module provides:
- EvictionResult: What a cleanup evicted and how much it fell short
- EvictionPolicyEngine: Orders unpinned entries by policy and picks enough
  of them to free a target number of bytes

Policies (see EvictionPolicy):
    | Policy | Order                                              |
    |--------|----------------------------------------------------|
    | LRU    | ascending last access time                         |
    | LFU    | ascending access count, then older last access     |
    | FIFO   | ascending cache insertion time                     |
    | SIZE   | descending size (largest first)                    |

Entries that are pinned, or whose original path lies under a pinned folder,
are never candidates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cloudsync.core.config import EvictionPolicy

if TYPE_CHECKING:
    from cloudsync.cache.store import CacheEntry

logger = logging.getLogger(__name__)


@dataclass
class EvictionResult:
    """Outcome of a cleanup pass.

    Attributes:
        evicted: Identifiers removed, in eviction order.
        freed: Bytes reclaimed.
        target: Bytes that were requested.
    """

    evicted: list[str] = field(default_factory=list)
    freed: int = 0
    target: int = 0

    @property
    def shortfall(self) -> int:
        """Bytes still missing when unpinned entries were not enough."""
        return max(0, self.target - self.freed)


_SORT_KEYS: dict[EvictionPolicy, Callable[[CacheEntry], Any]] = {
    EvictionPolicy.LRU: lambda e: (e.last_access, e.cache_time),
    EvictionPolicy.LFU: lambda e: (e.access_count, e.last_access),
    EvictionPolicy.FIFO: lambda e: (e.cache_time, e.last_access),
    EvictionPolicy.SIZE: lambda e: (-e.size, e.last_access),
}


class EvictionPolicyEngine:
    """Selects cache entries to reclaim according to an eviction policy."""

    def __init__(self, policy: EvictionPolicy = EvictionPolicy.LRU) -> None:
        self.policy = policy

    def order(self, entries: Iterable[CacheEntry]) -> list[CacheEntry]:
        """Sort entries in eviction order for the current policy."""
        return sorted(entries, key=_SORT_KEYS[self.policy])

    def select(
        self,
        entries: Iterable[CacheEntry],
        target: int,
        is_folder_pinned: Callable[[str], bool] | None = None,
    ) -> list[CacheEntry]:
        """Pick entries whose total size reaches ``target``.

        Selection stops as soon as the accumulated size is >= target. If all
        eligible entries together are insufficient, all of them are returned.

        Args:
            entries: Every cache entry (pinned ones are filtered out here).
            target: Number of bytes to free.
            is_folder_pinned: Predicate telling whether an original path lies
                under a pinned folder.

        Returns:
            Entries to evict, in eviction order.
        """
        if target <= 0:
            return []

        eligible = [
            e for e in entries
            if not e.pinned
            and not (is_folder_pinned and is_folder_pinned(e.original_path))
        ]

        selected: list[CacheEntry] = []
        accumulated = 0
        for entry in self.order(eligible):
            if accumulated >= target:
                break
            selected.append(entry)
            accumulated += entry.size

        if accumulated < target:
            logger.debug(
                "Eviction (%s): unpinned entries hold %d bytes, %d requested",
                self.policy.value,
                accumulated,
                target,
            )
        return selected
