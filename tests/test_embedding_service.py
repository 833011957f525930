"""
Tests for the embedding service: caching, batching, similarity and ranking.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from federated_memory.core.errors import CacheUnavailable, DimensionMismatchError, EmbeddingGenerationError
from federated_memory.vector.cache import EmbeddingCache, ICacheBackend
from federated_memory.vector.service import EmbeddingService

from conftest import COMPACT_DIM, FULL_DIM, StubProvider


class TestGeneration:

    def test_warm_cache_returns_identical_vector_with_one_provider_call(self, embedding_service, provider):
        first = asyncio.run(embedding_service.generate_full("Person: John Doe"))
        second = asyncio.run(embedding_service.generate_full("Person: John Doe"))

        assert first == second
        assert len(provider.calls) == 1

    def test_cache_shared_across_whitespace_variants(self, embedding_service, provider):
        asyncio.run(embedding_service.generate_full("hello world"))
        asyncio.run(embedding_service.generate_full("  hello world \n"))

        assert len(provider.calls) == 1

    def test_compact_is_reduced_full(self, embedding_service):
        full = asyncio.run(embedding_service.generate_full("ministry schedule"))
        compact = asyncio.run(embedding_service.generate_compact("ministry schedule"))

        assert len(full) == FULL_DIM
        assert len(compact) == COMPACT_DIM
        assert compact == embedding_service.reducer.reduce(full, COMPACT_DIM)

    def test_blank_text_rejected_before_provider(self, embedding_service, provider):
        with pytest.raises(ValueError):
            asyncio.run(embedding_service.generate_full("   "))
        assert provider.calls == []

    def test_provider_error_propagates(self, embedding_service, provider):
        provider.fail = True
        with pytest.raises(EmbeddingGenerationError):
            asyncio.run(embedding_service.generate_full("anything"))

    def test_cache_outage_falls_back_to_provider(self, provider):
        backend = MagicMock(spec=ICacheBackend)
        backend.get = AsyncMock(side_effect=CacheUnavailable("down"))
        backend.set = AsyncMock(side_effect=CacheUnavailable("down"))
        service = EmbeddingService(provider, cache=EmbeddingCache(backend), compact_dimension=COMPACT_DIM)

        vector = asyncio.run(service.generate_full("still works"))

        assert len(vector) == FULL_DIM
        assert len(provider.calls) == 1

    def test_works_without_cache(self, provider):
        service = EmbeddingService(provider, compact_dimension=COMPACT_DIM)

        asyncio.run(service.generate_full("a"))
        asyncio.run(service.generate_full("a"))

        assert len(provider.calls) == 2


class TestBatch:

    def test_order_and_deduplication(self, embedding_service, provider):
        texts = ["alpha", "beta", "alpha", "gamma"]

        vectors = asyncio.run(embedding_service.generate_batch(texts))

        assert provider.texts_embedded == 3
        assert vectors[0] == vectors[2]
        for text, vector in zip(texts, vectors):
            assert vector == provider._fallback.embed_text(text)

    def test_only_uncached_texts_sent(self, embedding_service, provider):
        asyncio.run(embedding_service.generate_full("beta"))
        provider.calls.clear()

        asyncio.run(embedding_service.generate_batch(["alpha", "beta", "gamma"]))

        assert provider.calls == [["alpha", "gamma"]]

    def test_chunks_respect_batch_size_and_concurrency(self):
        in_flight = 0
        peak = 0

        class SlowProvider(StubProvider):
            async def embed_batch(self, texts):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return await super().embed_batch(texts)

        provider = SlowProvider(max_batch_size=3)
        service = EmbeddingService(provider, batch_size=10, max_concurrency=2, compact_dimension=COMPACT_DIM)
        texts = [f"text {i}" for i in range(10)]

        vectors = asyncio.run(service.generate_batch(texts))

        assert sorted(len(batch) for batch in provider.calls) == [1, 3, 3, 3]
        assert peak <= 2
        assert vectors == [provider._fallback.embed_text(t) for t in texts]

    def test_finished_chunks_stay_cached_when_another_fails(self, cache_backend):
        class PartlyFailingProvider(StubProvider):
            async def embed_batch(self, texts):
                if "t3" in texts:
                    self.calls.append(list(texts))
                    raise EmbeddingGenerationError("chunk rejected")
                return await super().embed_batch(texts)

        provider = PartlyFailingProvider(max_batch_size=2)
        service = EmbeddingService(provider, cache=EmbeddingCache(cache_backend), compact_dimension=COMPACT_DIM)

        with pytest.raises(EmbeddingGenerationError):
            asyncio.run(service.generate_batch(["t0", "t1", "t3", "t4"]))

        assert len(cache_backend) == 2
        provider.calls.clear()
        asyncio.run(service.generate_batch(["t0", "t1"]))
        assert provider.calls == []

    def test_compact_batch(self, embedding_service):
        vectors = asyncio.run(embedding_service.generate_compact_batch(["x", "y"]))
        assert [len(v) for v in vectors] == [COMPACT_DIM, COMPACT_DIM]

    def test_empty_batch(self, embedding_service, provider):
        assert asyncio.run(embedding_service.generate_batch([])) == []
        assert provider.calls == []


class TestSimilarity:

    def test_self_similarity_is_one(self):
        v = np.random.default_rng(1).normal(size=32).tolist()
        assert EmbeddingService.cosine_similarity(v, v) == pytest.approx(1.0)

    def test_dimension_mismatch_raises(self):
        with pytest.raises(DimensionMismatchError) as exc_info:
            EmbeddingService.cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
        assert exc_info.value.expected == 2
        assert exc_info.value.actual == 3

    def test_zero_magnitude_is_zero(self):
        assert EmbeddingService.cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_opposite_vectors(self):
        assert EmbeddingService.cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_top_k_orders_and_truncates(self):
        query = [1.0, 0.0]

        def at(similarity):
            return [similarity, float(np.sqrt(1 - similarity ** 2))]

        candidates = [("a", at(0.9)), ("b", at(0.95)), ("c", at(0.2))]

        result = EmbeddingService.top_k(query, candidates, k=2)

        assert [cid for cid, _ in result] == ["b", "a"]
        assert result[0][1] == pytest.approx(0.95)
        assert result[1][1] == pytest.approx(0.9)

    def test_top_k_ties_keep_input_order(self):
        result = EmbeddingService.top_k([1.0, 0.0], [("x", [2.0, 0.0]), ("y", [1.0, 0.0])], k=5)
        assert [cid for cid, _ in result] == ["x", "y"]


def test_clear_cache(provider, cache_backend, embedding_service):
    asyncio.run(embedding_service.generate_batch(["a", "b"]))
    asyncio.run(cache_backend.set("search:church:u1:abc", "[]", 60))

    removed = asyncio.run(embedding_service.clear_cache())

    assert removed == 2
    assert asyncio.run(cache_backend.get("search:church:u1:abc")) == "[]"
    asyncio.run(embedding_service.generate_full("a"))
    assert provider.texts_embedded == 3
