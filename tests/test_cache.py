"""
Tests for cache backends and the best-effort embedding cache.
"""

import asyncio
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from federated_memory.core.errors import CacheUnavailable
from federated_memory.vector.cache import (
    EmbeddingCache,
    ICacheBackend,
    InMemoryCacheBackend,
    SqliteCacheBackend,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestKeys:

    def test_key_format(self):
        key = EmbeddingCache.make_key("text-embedding-ada-002", 1536, "hello")

        prefix, provider, dimension, digest = key.split(":")
        assert prefix == "embedding"
        assert provider == "text-embedding-ada-002"
        assert dimension == "1536"
        assert len(digest) == 16

    def test_missing_dimension_uses_default(self):
        assert EmbeddingCache.make_key("p", None, "hello").startswith("embedding:p:default:")

    def test_normalization_ignores_whitespace_and_unicode_form(self):
        composed = "caf\u00e9"
        decomposed = "cafe\u0301"

        assert EmbeddingCache.content_hash(f"  {composed}\n") == EmbeddingCache.content_hash(decomposed)
        assert EmbeddingCache.content_hash("cafe") != EmbeddingCache.content_hash(composed)


class TestInMemoryCacheBackend:

    def test_set_get_and_expiry(self):
        clock = FakeClock()
        backend = InMemoryCacheBackend(clock=clock)

        asyncio.run(backend.set("k", "v", ttl_seconds=10))
        assert asyncio.run(backend.get("k")) == "v"

        clock.now += 10
        assert asyncio.run(backend.get("k")) is None
        assert len(backend) == 0

    def test_delete_prefix(self):
        backend = InMemoryCacheBackend()
        for key in ["embedding:a", "embedding:b", "search:church:u1:x"]:
            asyncio.run(backend.set(key, "1", 60))

        assert asyncio.run(backend.delete_prefix("embedding:")) == 2
        assert asyncio.run(backend.get("search:church:u1:x")) == "1"


class TestSqliteCacheBackend:

    def test_roundtrip_and_lazy_expiry(self, db_path):
        clock = FakeClock()
        backend = SqliteCacheBackend(db_path, clock=clock)

        asyncio.run(backend.set("embedding:x", "[1.0]", 5))
        assert asyncio.run(backend.get("embedding:x")) == "[1.0]"

        clock.now += 6
        assert asyncio.run(backend.get("embedding:x")) is None

    def test_delete_prefix_and_purge(self, db_path):
        clock = FakeClock()
        backend = SqliteCacheBackend(db_path, clock=clock)
        asyncio.run(backend.set("embedding:a", "1", 5))
        asyncio.run(backend.set("embedding_other", "2", 500))
        asyncio.run(backend.set("search:x", "3", 5))

        assert asyncio.run(backend.delete_prefix("embedding:")) == 1

        clock.now += 10
        assert asyncio.run(backend.purge_expired()) == 1
        assert asyncio.run(backend.get("embedding_other")) == "2"

    def test_missing_table_raises_cache_unavailable(self, tmp_path):
        backend = SqliteCacheBackend(str(tmp_path / "empty.db"))
        with pytest.raises(CacheUnavailable):
            asyncio.run(backend.get("anything"))


class TestEmbeddingCache:

    def test_hit_after_set(self):
        cache = EmbeddingCache(InMemoryCacheBackend())

        asyncio.run(cache.set("embedding:p:3:abc", [0.1, 0.2, 0.3]))

        assert asyncio.run(cache.get("embedding:p:3:abc")) == [0.1, 0.2, 0.3]

    @pytest.mark.parametrize("ttl,expected", [(None, 86400), (0, 0), (30, 30)])
    def test_ttl_passed_to_backend(self, ttl, expected):
        backend = MagicMock(spec=ICacheBackend)
        backend.set = AsyncMock()
        cache = EmbeddingCache(backend, ttl_seconds=86400)

        asyncio.run(cache.set("k", [1.0], ttl))

        backend.set.assert_awaited_once_with("k", "[1.0]", expected)

    def test_backend_failure_degrades_to_miss(self):
        backend = MagicMock(spec=ICacheBackend)
        backend.get = AsyncMock(side_effect=CacheUnavailable("down"))
        backend.set = AsyncMock(side_effect=sqlite3.OperationalError("locked"))
        backend.delete_prefix = AsyncMock(side_effect=ConnectionError("gone"))
        cache = EmbeddingCache(backend)

        assert asyncio.run(cache.get("k")) is None
        asyncio.run(cache.set("k", [1.0]))
        assert asyncio.run(cache.invalidate_prefix("embedding:")) == 0

    def test_slow_backend_times_out_as_miss(self):
        class SlowBackend(InMemoryCacheBackend):
            async def get(self, key):
                await asyncio.sleep(1)
                return "[1.0]"

        cache = EmbeddingCache(SlowBackend(), timeout=0.01)

        assert asyncio.run(cache.get("k")) is None

    @pytest.mark.parametrize("payload", ["not json", '{"a": 1}', '["x", "y"]'])
    def test_corrupted_entry_is_a_miss(self, payload):
        backend = InMemoryCacheBackend()
        asyncio.run(backend.set("k", payload, 60))

        assert asyncio.run(EmbeddingCache(backend).get("k")) is None
