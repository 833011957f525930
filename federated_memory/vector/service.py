"""
Embedding service: cache-aware full and compact embeddings plus similarity helpers.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.errors import DimensionMismatchError
from ..util.logging import logger
from .cache import DEFAULT_TTL_SECONDS, EMBEDDING_KEY_PREFIX, EmbeddingCache
from .embeddings import IEmbeddingProvider
from .reducer import DEFAULT_COMPACT_DIMENSION, DimensionReducer


class EmbeddingService:
    """
    Produces full vectors through a provider and compact vectors through a reducer.

    Cached vectors are served without calling the provider. Batch calls send
    each distinct uncached text once, in chunks of batch_size, with at most
    max_concurrency chunks in flight.
    """

    def __init__(self, provider: IEmbeddingProvider, cache: Optional[EmbeddingCache] = None,
                 reducer: Optional[DimensionReducer] = None, compact_dimension: int = DEFAULT_COMPACT_DIMENSION,
                 batch_size: int = 100, max_concurrency: int = 4, cache_ttl: int = DEFAULT_TTL_SECONDS):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.provider = provider
        self.cache = cache
        self.compact_dimension = compact_dimension
        self.reducer = reducer or DimensionReducer(compact_dimension)
        self.batch_size = min(batch_size, provider.max_batch_size)
        self.max_concurrency = max_concurrency
        self.cache_ttl = cache_ttl

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def _cache_key(self, text: str) -> str:
        return EmbeddingCache.make_key(self.provider.name, self.provider.dimension, text)

    @staticmethod
    def _check_text(text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Cannot embed empty text")

    async def generate_full(self, text: str) -> List[float]:
        """Full-dimension embedding for one text."""
        self._check_text(text)
        key = self._cache_key(text)

        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        vector = await self.provider.embed(text)

        if self.cache is not None:
            await self.cache.set(key, vector, self.cache_ttl)
        return vector

    async def generate_compact(self, text: str) -> List[float]:
        """Reduced embedding used by the central index."""
        return self.reduce(await self.generate_full(text))

    def reduce(self, vector: List[float]) -> List[float]:
        return self.reducer.reduce(vector, self.compact_dimension)

    async def generate_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Full embeddings for many texts, in input order."""
        texts = list(texts)
        if not texts:
            return []
        for text in texts:
            self._check_text(text)

        keys = [self._cache_key(text) for text in texts]
        resolved: Dict[str, List[float]] = {}

        if self.cache is not None:
            unique_keys = list(dict.fromkeys(keys))
            cached = await asyncio.gather(*(self.cache.get(key) for key in unique_keys))
            resolved = {key: vector for key, vector in zip(unique_keys, cached) if vector is not None}

        # One provider call per distinct uncached text
        pending: Dict[str, str] = {}
        for key, text in zip(keys, texts):
            if key not in resolved and key not in pending:
                pending[key] = text

        if pending:
            pending_keys = list(pending)
            chunks = [pending_keys[i:i + self.batch_size] for i in range(0, len(pending_keys), self.batch_size)]
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def embed_chunk(chunk_keys: List[str]) -> None:
                async with semaphore:
                    vectors = await self.provider.embed_batch([pending[key] for key in chunk_keys])
                for key, vector in zip(chunk_keys, vectors):
                    resolved[key] = vector
                # Cached per chunk so a later failure keeps finished work
                if self.cache is not None:
                    await asyncio.gather(*(self.cache.set(key, vector, self.cache_ttl)
                                           for key, vector in zip(chunk_keys, vectors)))

            outcomes = await asyncio.gather(*(embed_chunk(chunk) for chunk in chunks), return_exceptions=True)
            failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
            if failures:
                logger.log_embedding_operation(
                    "generate_batch", self.provider.name, len(pending_keys), "failed",
                    {"failed_chunks": len(failures), "chunks": len(chunks)}
                )
                raise failures[0]

            logger.log_embedding_operation(
                "generate_batch", self.provider.name, len(pending_keys),
                details={"requested": len(texts), "chunks": len(chunks)}
            )

        return [resolved[key] for key in keys]

    async def generate_compact_batch(self, texts: Sequence[str]) -> List[List[float]]:
        full_vectors = await self.generate_batch(texts)
        return [self.reduce(vector) for vector in full_vectors]

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity clamped to [-1, 1]; 0.0 when either vector has zero magnitude."""
        if len(a) != len(b):
            raise DimensionMismatchError(len(a), len(b))

        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
        norm_a = np.linalg.norm(va)
        norm_b = np.linalg.norm(vb)
        if norm_a == 0 or norm_b == 0:
            return 0.0

        similarity = float(np.dot(va, vb) / (norm_a * norm_b))
        return max(-1.0, min(1.0, similarity))

    @classmethod
    def top_k(cls, query: Sequence[float], candidates: Sequence[Tuple[str, Sequence[float]]],
              k: int = 5) -> List[Tuple[str, float]]:
        """Rank (id, vector) candidates against query. Ties keep candidate order."""
        if k < 1:
            return []
        scored = [(candidate_id, cls.cosine_similarity(query, vector)) for candidate_id, vector in candidates]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]

    async def clear_cache(self) -> int:
        """Drop every cached embedding. Returns the number of entries removed."""
        if self.cache is None:
            return 0
        return await self.cache.invalidate_prefix(EMBEDDING_KEY_PREFIX)
