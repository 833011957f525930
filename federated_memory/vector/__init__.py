"""
Embedding providers, caching, dimension reduction and the embedding service.
"""

from .cache import EmbeddingCache, ICacheBackend, InMemoryCacheBackend, SqliteCacheBackend
from .embeddings import (
    DeterministicHashEmbedding,
    IEmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbedding,
)
from .reducer import DimensionReducer
from .service import EmbeddingService

__all__ = [
    "EmbeddingCache",
    "ICacheBackend",
    "InMemoryCacheBackend",
    "SqliteCacheBackend",
    "DeterministicHashEmbedding",
    "IEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SentenceTransformerEmbedding",
    "DimensionReducer",
    "EmbeddingService",
]
