"""Local file cache: residency records, pinning and eviction."""

from cloudsync.cache.eviction import EvictionPolicyEngine, EvictionResult
from cloudsync.cache.persistence import MetadataStore, SQLiteMetadataStore
from cloudsync.cache.store import CacheEntry, CacheStats, CacheStore

__all__ = [
    "CacheEntry",
    "CacheStats",
    "CacheStore",
    "EvictionPolicyEngine",
    "EvictionResult",
    "MetadataStore",
    "SQLiteMetadataStore",
]
