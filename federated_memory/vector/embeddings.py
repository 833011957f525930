"""
Embedding providers. Every provider turns text into a full-dimension vector;
the remote provider is the production path, the hash provider keeps the core
usable offline and in tests.
"""

from abc import ABC, abstractmethod
import asyncio
import hashlib
import re
from typing import List

import numpy as np

from ..core.errors import EmbeddingGenerationError
from ..util.logging import logger

DEFAULT_MAX_BATCH_SIZE = 100

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Model identifier, used in cache keys."""
        pass

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate one embedding per input text, in input order."""
        pass

    async def embed(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    def _validate_texts(self, texts: List[str]) -> None:
        if not texts:
            raise ValueError("texts cannot be empty")
        if len(texts) > self.max_batch_size:
            raise ValueError(
                f"Batch of {len(texts)} texts exceeds provider limit of {self.max_batch_size}"
            )
        for text in texts:
            if not isinstance(text, str) or not text.strip():
                raise ValueError("Cannot embed empty text")


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider.

    Each token is hashed into a bucket with a sign, so texts that share
    words point in similar directions. The vector is a pure function of
    the text, which makes it suitable for tests and offline use.
    """

    def __init__(self, dimension: int = 1536, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self._dimension = dimension
        self.max_batch_size = max_batch_size

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def name(self) -> str:
        return "deterministic-hash"

    def embed_text(self, text: str) -> List[float]:
        """Synchronous embedding of a single text."""
        vector = np.zeros(self._dimension, dtype=np.float64)
        tokens = TOKEN_PATTERN.findall(text.lower()) or [text]

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:8], "big") % self._dimension
            sign = 1.0 if digest[8] & 1 else -1.0
            vector[bucket] += sign

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self._validate_texts(texts)
        return [self.embed_text(text) for text in texts]


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """OpenAI embeddings API provider.

    The client is synchronous and runs in a worker thread. Retries are
    disabled on the client; failures surface as EmbeddingGenerationError.
    """

    def __init__(self, api_key: str, model: str = "text-embedding-ada-002", dimension: int = 1536,
                 max_batch_size: int = DEFAULT_MAX_BATCH_SIZE, timeout: float = 30.0, client=None):
        self.model = model
        self._dimension = dimension
        self.max_batch_size = max_batch_size
        if client is None:
            from openai import OpenAI
            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def name(self) -> str:
        return self.model

    def _create(self, texts: List[str]):
        return self.client.embeddings.create(model=self.model, input=texts)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self._validate_texts(texts)

        try:
            response = await asyncio.to_thread(self._create, texts)
        except Exception as e:
            logger.log_embedding_operation("embed_batch", self.model, len(texts), "failed", {"error": str(e)})
            raise EmbeddingGenerationError(f"Embedding request failed: {e}", cause=e) from e

        try:
            items = sorted(response.data, key=lambda item: item.index)
            vectors = [[float(x) for x in item.embedding] for item in items]
        except (TypeError, AttributeError, ValueError) as e:
            logger.log_embedding_operation("embed_batch", self.model, len(texts), "failed", {"error": str(e)})
            raise EmbeddingGenerationError(f"Malformed embedding response: {e}", cause=e) from e

        if len(vectors) != len(texts):
            raise EmbeddingGenerationError(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        for vector in vectors:
            if len(vector) != self._dimension:
                raise EmbeddingGenerationError(
                    f"Provider returned dimension {len(vector)}, expected {self._dimension}"
                )

        logger.log_embedding_operation("embed_batch", self.model, len(texts))
        return vectors


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models.

    Uses the all-mpnet-base-v2 model for high-quality semantic embeddings.
    """

    def __init__(self, model_name: str = "all-mpnet-base-v2", max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        self.model_name = model_name
        self.max_batch_size = max_batch_size
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension

    @property
    def name(self) -> str:
        return self.model_name

    def _encode(self, texts: List[str]) -> List[List[float]]:
        embeddings = self.model.encode(texts, convert_to_tensor=False)
        return [list(map(float, row)) for row in embeddings]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self._validate_texts(texts)
        try:
            return await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            raise EmbeddingGenerationError(f"Local embedding failed: {e}", cause=e) from e
