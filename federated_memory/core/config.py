"""
Configuration for the federated memory core.

Values come from the environment (a local .env is loaded first). Module-level
constants reflect the environment at import time; CoreSettings.from_env()
re-reads it so a process can build its runtime from fresh values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/federated_memory.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Embedding provider configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "openai")  # openai|hash|sentence-transformers
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "text-embedding-ada-002")
ST_MODEL_NAME = os.getenv("ST_MODEL_NAME", "all-mpnet-base-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "1536"))
COMPACT_EMBED_DIM = int(os.getenv("COMPACT_EMBED_DIM", "512"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "100"))
EMBED_MAX_CONCURRENCY = int(os.getenv("EMBED_MAX_CONCURRENCY", "4"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "30"))

# Embedding cache configuration
EMBED_CACHE_ENABLED = os.getenv("EMBED_CACHE_ENABLED", "true").lower() == "true"
EMBED_CACHE_BACKEND = os.getenv("EMBED_CACHE_BACKEND", "memory")  # memory|sqlite
EMBED_CACHE_TTL_SEC = int(os.getenv("EMBED_CACHE_TTL_SEC", "86400"))  # 24 hours
CACHE_TIMEOUT_SEC = float(os.getenv("CACHE_TIMEOUT_SEC", "1.0"))

# Search configuration
SEARCH_CACHE_TTL_SEC = int(os.getenv("SEARCH_CACHE_TTL_SEC", "300"))
DEFAULT_SEARCH_LIMIT = int(os.getenv("DEFAULT_SEARCH_LIMIT", "10"))

ENABLED_MODULES = os.getenv("ENABLED_MODULES", "church,technical")

# Placeholder keys that count as "no credential"
PLACEHOLDER_API_KEYS = {"", "sk-test"}

VERSION = "0.1.0"

VALID_PROVIDERS = ["openai", "hash", "sentence-transformers"]
VALID_CACHE_BACKENDS = ["memory", "sqlite"]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class CoreSettings:
    """Resolved configuration handed to the runtime at init time."""

    db_path: str = DB_PATH
    log_level: str = LOG_LEVEL
    embed_provider: str = EMBED_PROVIDER
    openai_api_key: Optional[str] = OPENAI_API_KEY
    embed_model_name: str = EMBED_MODEL_NAME
    st_model_name: str = ST_MODEL_NAME
    embed_dim: int = EMBED_DIM
    compact_embed_dim: int = COMPACT_EMBED_DIM
    embed_batch_size: int = EMBED_BATCH_SIZE
    embed_max_concurrency: int = EMBED_MAX_CONCURRENCY
    embed_timeout_sec: float = EMBED_TIMEOUT_SEC
    embed_cache_enabled: bool = EMBED_CACHE_ENABLED
    embed_cache_backend: str = EMBED_CACHE_BACKEND
    embed_cache_ttl_sec: int = EMBED_CACHE_TTL_SEC
    cache_timeout_sec: float = CACHE_TIMEOUT_SEC
    search_cache_ttl_sec: int = SEARCH_CACHE_TTL_SEC
    default_search_limit: int = DEFAULT_SEARCH_LIMIT
    enabled_modules: List[str] = field(
        default_factory=lambda: [m.strip() for m in ENABLED_MODULES.split(",") if m.strip()]
    )

    @classmethod
    def from_env(cls) -> "CoreSettings":
        """Build settings from the current environment."""
        return cls(
            db_path=os.getenv("DB_PATH", "./data/federated_memory.db"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            embed_provider=os.getenv("EMBED_PROVIDER", "openai"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            embed_model_name=os.getenv("EMBED_MODEL_NAME", "text-embedding-ada-002"),
            st_model_name=os.getenv("ST_MODEL_NAME", "all-mpnet-base-v2"),
            embed_dim=int(os.getenv("EMBED_DIM", "1536")),
            compact_embed_dim=int(os.getenv("COMPACT_EMBED_DIM", "512")),
            embed_batch_size=int(os.getenv("EMBED_BATCH_SIZE", "100")),
            embed_max_concurrency=int(os.getenv("EMBED_MAX_CONCURRENCY", "4")),
            embed_timeout_sec=float(os.getenv("EMBED_TIMEOUT_SEC", "30")),
            embed_cache_enabled=_env_bool("EMBED_CACHE_ENABLED", "true"),
            embed_cache_backend=os.getenv("EMBED_CACHE_BACKEND", "memory"),
            embed_cache_ttl_sec=int(os.getenv("EMBED_CACHE_TTL_SEC", "86400")),
            cache_timeout_sec=float(os.getenv("CACHE_TIMEOUT_SEC", "1.0")),
            search_cache_ttl_sec=int(os.getenv("SEARCH_CACHE_TTL_SEC", "300")),
            default_search_limit=int(os.getenv("DEFAULT_SEARCH_LIMIT", "10")),
            enabled_modules=[m.strip() for m in os.getenv("ENABLED_MODULES", "church,technical").split(",") if m.strip()],
        )

    def has_provider_credential(self) -> bool:
        """Check whether a real OpenAI credential is configured."""
        return (self.openai_api_key or "").strip() not in PLACEHOLDER_API_KEYS


def get_embedding_provider(settings: CoreSettings):
    """Get configured embedding provider implementation.

    Falls back to the deterministic hash provider when no credential is configured.
    """
    from ..util.logging import logger

    if settings.embed_provider == "sentence-transformers":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(
            model_name=settings.st_model_name,
            max_batch_size=settings.embed_batch_size,
        )

    if settings.embed_provider == "openai" and settings.has_provider_credential():
        from ..vector.embeddings import OpenAIEmbeddingProvider
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embed_model_name,
            dimension=settings.embed_dim,
            max_batch_size=settings.embed_batch_size,
            timeout=settings.embed_timeout_sec,
        )

    if settings.embed_provider == "openai":
        logger.warning("OPENAI_API_KEY not configured - using deterministic hash embeddings")

    from ..vector.embeddings import DeterministicHashEmbedding
    return DeterministicHashEmbedding(
        dimension=settings.embed_dim,
        max_batch_size=settings.embed_batch_size,
    )


def get_cache_backend(settings: CoreSettings):
    """Get configured cache backend. Returns None if caching is disabled."""
    if not settings.embed_cache_enabled:
        return None

    if settings.embed_cache_backend == "sqlite":
        from ..vector.cache import SqliteCacheBackend
        return SqliteCacheBackend(settings.db_path)

    from ..vector.cache import InMemoryCacheBackend
    return InMemoryCacheBackend()


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config(settings: CoreSettings) -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    if settings.embed_provider not in VALID_PROVIDERS:
        issues.append(f"Invalid EMBED_PROVIDER: {settings.embed_provider}")

    if settings.embed_cache_backend not in VALID_CACHE_BACKENDS:
        issues.append(f"Invalid EMBED_CACHE_BACKEND: {settings.embed_cache_backend}")

    if settings.embed_dim < 1:
        issues.append("EMBED_DIM must be >= 1")

    if settings.compact_embed_dim < 1:
        issues.append("COMPACT_EMBED_DIM must be >= 1")
    elif settings.compact_embed_dim > settings.embed_dim:
        issues.append("COMPACT_EMBED_DIM must not exceed EMBED_DIM")

    if settings.embed_batch_size < 1:
        issues.append("EMBED_BATCH_SIZE must be >= 1")

    if settings.embed_max_concurrency < 1:
        issues.append("EMBED_MAX_CONCURRENCY must be >= 1")

    if settings.embed_cache_ttl_sec < 1:
        issues.append("EMBED_CACHE_TTL_SEC must be >= 1")

    if settings.default_search_limit < 1:
        issues.append("DEFAULT_SEARCH_LIMIT must be >= 1")

    return issues
