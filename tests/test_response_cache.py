"""Tests for the SQLite response cache.

Covers storage round trips, TTL freshness, eviction, overwrite
semantics, and fail-open behavior when the database is broken.
"""

import asyncio
from pathlib import Path

import sqlalchemy as sa

from courtesy.data_types import CacheEntry
from courtesy.driver.cache import (
    CACHE_SCHEMA_VERSION,
    ResponseCache,
    cache_schema_version,
    compress,
    decompress,
)
from tests.conftest import FakeClock


def _entry(
    key: str = "k1",
    body: bytes = b"<html>hello</html>",
    stored_at: float = 1000.0,
    ttl: float = 60.0,
    status_code: int = 200,
) -> CacheEntry:
    return CacheEntry(
        key=key,
        url=f"https://example.com/{key}",
        status_code=status_code,
        headers={"Content-Type": "text/html"},
        body=body,
        stored_at=stored_at,
        ttl=ttl,
    )


class TestCompression:
    def test_roundtrip(self):
        data = b"<html>" + b"a" * 10_000 + b"</html>"
        compressed = compress(data)
        assert len(compressed) < len(data)
        assert decompress(compressed) == data


class TestResponseCache:
    async def test_miss_on_empty_cache(self, response_cache: ResponseCache):
        assert await response_cache.get("missing") is None

    async def test_put_then_get(self, response_cache: ResponseCache):
        await response_cache.put("k1", _entry())
        entry = await response_cache.get("k1")

        assert entry is not None
        assert entry.body == b"<html>hello</html>"
        assert entry.status_code == 200
        assert entry.headers["Content-Type"] == "text/html"
        assert entry.url == "https://example.com/k1"
        assert entry.stored_at == 1000.0
        assert entry.ttl == 60.0

    async def test_empty_body(self, response_cache: ResponseCache):
        await response_cache.put("k1", _entry(body=b"", status_code=204))
        entry = await response_cache.get("k1")
        assert entry is not None
        assert entry.body == b""
        assert entry.status_code == 204

    async def test_expired_entry_is_a_miss(
        self, response_cache: ResponseCache, clock: FakeClock
    ):
        await response_cache.put("k1", _entry(stored_at=clock(), ttl=60.0))

        clock.advance(60.0)
        assert await response_cache.get("k1") is not None

        clock.advance(0.5)
        assert await response_cache.get("k1") is None
        # Expired entries stay stored until evicted
        assert await response_cache.count() == 1

    async def test_put_overwrites(self, response_cache: ResponseCache):
        await response_cache.put("k1", _entry(body=b"old"))
        await response_cache.put("k1", _entry(body=b"new", stored_at=1001.0))

        entry = await response_cache.get("k1")
        assert entry is not None
        assert entry.body == b"new"
        assert entry.stored_at == 1001.0
        assert await response_cache.count() == 1

    async def test_evict_expired(
        self, response_cache: ResponseCache, clock: FakeClock
    ):
        await response_cache.put("old", _entry("old", stored_at=900.0, ttl=10))
        await response_cache.put("new", _entry("new", stored_at=clock()))

        assert await response_cache.evict_expired() == 1
        assert await response_cache.count() == 1
        assert await response_cache.get("new") is not None
        assert await response_cache.evict_expired() == 0

    async def test_concurrent_put_get_evict_same_key(
        self, response_cache: ResponseCache, clock: FakeClock
    ):
        # An expired entry for the key is waiting to be evicted
        await response_cache.put("k1", _entry(stored_at=900.0, ttl=10.0))
        bodies = {f"version {i} ".encode() * 200 for i in range(20)}

        operations = []
        for body in sorted(bodies):
            operations.append(
                response_cache.put("k1", _entry(body=body, stored_at=clock()))
            )
            operations.append(response_cache.get("k1"))
            operations.append(response_cache.evict_expired())
        results = await asyncio.gather(*operations)

        reads = results[1::3]
        removed = results[2::3]
        for entry in reads:
            if entry is None:
                continue
            assert entry.body in bodies
            assert entry.url == "https://example.com/k1"
            assert entry.headers["Content-Type"] == "text/html"
            assert entry.stored_at == clock()
        assert sum(removed) <= 1

        final = await response_cache.get("k1")
        assert final is not None
        assert final.body in bodies
        assert await response_cache.count() == 1

    async def test_stats(
        self, response_cache: ResponseCache, clock: FakeClock
    ):
        body = b"x" * 5000
        await response_cache.put("a", _entry("a", body=body))
        await response_cache.put(
            "b", _entry("b", body=body, stored_at=100.0, ttl=1.0)
        )

        stats = await response_cache.stats()
        assert stats.entries == 2
        assert stats.expired == 1
        assert stats.bytes_original == 10_000
        assert 0 < stats.bytes_compressed < stats.bytes_original
        assert stats.compression_ratio > 1.0

    async def test_persists_across_reopen(
        self, tmp_path: Path, clock: FakeClock
    ):
        db_path = tmp_path / "responses.db"
        async with ResponseCache.open(db_path, clock=clock) as cache:
            await cache.put("k1", _entry())

        async with ResponseCache.open(db_path, clock=clock) as cache:
            entry = await cache.get("k1")
            assert entry is not None
            assert entry.body == b"<html>hello</html>"

            async with cache._engine.connect() as conn:
                version = await cache_schema_version(conn)
                stamps = await conn.scalar(
                    sa.text("SELECT COUNT(*) FROM schema_info")
                )
            assert version == CACHE_SCHEMA_VERSION
            assert stamps == 1


class TestResponseCacheFailOpen:
    async def _break(self, cache: ResponseCache) -> None:
        async with cache._engine.begin() as conn:
            await conn.execute(sa.text("DROP TABLE cached_responses"))

    async def test_read_failure_is_a_miss(
        self, response_cache: ResponseCache
    ):
        await response_cache.put("k1", _entry())
        await self._break(response_cache)

        assert await response_cache.get("k1") is None

    async def test_write_failure_is_dropped(
        self, response_cache: ResponseCache
    ):
        await self._break(response_cache)

        await response_cache.put("k1", _entry())
        assert await response_cache.count() == 0
        assert await response_cache.evict_expired() == 0

    async def test_corrupt_body_is_a_miss(
        self, response_cache: ResponseCache
    ):
        await response_cache.put("k1", _entry())
        async with response_cache._engine.begin() as conn:
            await conn.execute(
                sa.text(
                    "UPDATE cached_responses "
                    "SET content_compressed = x'deadbeef'"
                )
            )

        assert await response_cache.get("k1") is None
