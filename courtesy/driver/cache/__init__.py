"""SQLite-backed response cache.

This package provides the on-disk store used by the FetchScheduler:
- Responses keyed by request fingerprint
- Bodies compressed with zstd
- TTL freshness with explicit eviction
- Best-effort semantics: storage failures degrade to cache misses
"""

from courtesy.driver.cache.compression import (
    DEFAULT_COMPRESSION_LEVEL,
    compress,
    decompress,
)
from courtesy.driver.cache.database import (
    CACHE_SCHEMA_VERSION,
    cache_schema_version,
    open_cache_database,
)
from courtesy.driver.cache.models import CachedResponse, SchemaInfo
from courtesy.driver.cache.response_cache import CacheStats, ResponseCache

__all__ = [
    "CACHE_SCHEMA_VERSION",
    "DEFAULT_COMPRESSION_LEVEL",
    "CacheStats",
    "CachedResponse",
    "ResponseCache",
    "SchemaInfo",
    "cache_schema_version",
    "compress",
    "decompress",
    "open_cache_database",
]
