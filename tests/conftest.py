"""
Shared fixtures: temporary SQLite databases, stub embedding providers and a
fully wired runtime.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from federated_memory.cmi.index import CentralMemoryIndex
from federated_memory.core import runtime
from federated_memory.core.config import CoreSettings
from federated_memory.core.db import init_db
from federated_memory.core.errors import EmbeddingGenerationError
from federated_memory.modules import ChurchModule, ModuleRegistry, TechnicalModule
from federated_memory.vector.cache import EmbeddingCache, InMemoryCacheBackend
from federated_memory.vector.embeddings import DeterministicHashEmbedding, IEmbeddingProvider
from federated_memory.vector.service import EmbeddingService

FULL_DIM = 64
COMPACT_DIM = 16


class StubProvider(IEmbeddingProvider):
    """Provider returning crafted vectors for known texts and hash vectors otherwise."""

    def __init__(self, dimension: int = FULL_DIM, vectors: Optional[Dict[str, List[float]]] = None,
                 max_batch_size: int = 100):
        self._dimension = dimension
        self.vectors = vectors or {}
        self.max_batch_size = max_batch_size
        self.calls: List[List[str]] = []
        self.fail = False
        self._fallback = DeterministicHashEmbedding(dimension=dimension, max_batch_size=max_batch_size)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def name(self) -> str:
        return "stub"

    async def embed_batch(self, texts):
        self._validate_texts(texts)
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingGenerationError("provider unavailable")
        return [list(self.vectors.get(text) or self._fallback.embed_text(text)) for text in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)


@pytest.fixture
def db_path(tmp_path):
    """Initialized temporary database."""
    path = str(tmp_path / "memory.db")
    init_db(path)
    return path


@pytest.fixture
def provider():
    return StubProvider()


@pytest.fixture
def cache_backend():
    return InMemoryCacheBackend()


@pytest.fixture
def embedding_service(provider, cache_backend):
    return EmbeddingService(
        provider,
        cache=EmbeddingCache(cache_backend),
        compact_dimension=COMPACT_DIM,
    )


@pytest.fixture
def settings(tmp_path):
    return CoreSettings(
        db_path=str(tmp_path / "core.db"),
        embed_provider="hash",
        openai_api_key=None,
        embed_dim=FULL_DIM,
        compact_embed_dim=COMPACT_DIM,
        embed_cache_backend="memory",
        enabled_modules=["church", "technical"],
    )


@pytest.fixture
def core(settings, provider, cache_backend):
    """Initialized runtime with the stub provider and an in-memory cache."""
    memory_core = asyncio.run(runtime.init(settings, provider=provider, cache_backend=cache_backend))
    yield memory_core
    asyncio.run(runtime.shutdown())


class TickingClock:
    """Clock that advances one second per reading."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def stack(db_path, embedding_service, cache_backend, clock):
    """Church and technical modules wired to a central index, without the global runtime."""
    registry = ModuleRegistry()
    cmi = CentralMemoryIndex(db_path, embedding_service, registry, clock=clock)
    church = ChurchModule(db_path, embedding_service, cmi=cmi, cache_backend=cache_backend, clock=clock)
    technical = TechnicalModule(db_path, embedding_service, cmi=cmi, cache_backend=cache_backend, clock=clock)
    registry.register(church)
    registry.register(technical)
    asyncio.run(registry.initialize_all())
    return SimpleNamespace(registry=registry, cmi=cmi, church=church, technical=technical)
