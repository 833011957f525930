"""
Process-wide runtime: builds the provider, cache, embedding service, modules
and central index once, and hands them to callers by reference.
"""

from dataclasses import dataclass
from typing import Optional

from .config import CoreSettings, get_cache_backend, get_embedding_provider, validate_config
from .db import init_db
from .errors import ConfigurationError
from ..cmi.index import CentralMemoryIndex
from ..modules import MODULE_CLASSES, ModuleRegistry
from ..util.logging import logger
from ..vector.cache import EmbeddingCache, ICacheBackend
from ..vector.embeddings import IEmbeddingProvider
from ..vector.service import EmbeddingService


@dataclass
class MemoryCore:
    settings: CoreSettings
    provider: IEmbeddingProvider
    cache_backend: Optional[ICacheBackend]
    embeddings: EmbeddingService
    registry: ModuleRegistry
    cmi: CentralMemoryIndex

    def module(self, module_id: str):
        return self.registry.require(module_id)


_core: Optional[MemoryCore] = None


async def init(settings: CoreSettings = None, provider: IEmbeddingProvider = None,
               cache_backend: ICacheBackend = None) -> MemoryCore:
    """Build and initialize the runtime.

    Args:
        settings: configuration, read from the environment when omitted
        provider: embedding provider override (tests, custom models)
        cache_backend: cache backend override

    Raises:
        ConfigurationError: invalid settings or an unknown module id
    """
    global _core

    settings = settings or CoreSettings.from_env()
    issues = validate_config(settings)
    unknown = [m for m in settings.enabled_modules if m not in MODULE_CLASSES]
    if unknown:
        issues.append(f"Unknown modules in ENABLED_MODULES: {', '.join(unknown)}")
    if issues:
        raise ConfigurationError("; ".join(issues))

    logger.set_level(settings.log_level)
    init_db(settings.db_path)

    provider = provider or get_embedding_provider(settings)
    if settings.compact_embed_dim > provider.dimension:
        raise ConfigurationError(
            f"COMPACT_EMBED_DIM ({settings.compact_embed_dim}) exceeds the dimension of "
            f"provider {provider.name} ({provider.dimension})"
        )
    if cache_backend is None:
        cache_backend = get_cache_backend(settings)

    cache = None
    if cache_backend is not None:
        cache = EmbeddingCache(cache_backend, ttl_seconds=settings.embed_cache_ttl_sec,
                               timeout=settings.cache_timeout_sec)

    embeddings = EmbeddingService(
        provider,
        cache=cache,
        compact_dimension=settings.compact_embed_dim,
        batch_size=settings.embed_batch_size,
        max_concurrency=settings.embed_max_concurrency,
        cache_ttl=settings.embed_cache_ttl_sec,
    )

    registry = ModuleRegistry()
    cmi = CentralMemoryIndex(settings.db_path, embeddings, registry)
    for module_id in settings.enabled_modules:
        module = MODULE_CLASSES[module_id](
            settings.db_path,
            embeddings,
            cmi=cmi,
            cache_backend=cache_backend,
            search_cache_ttl=settings.search_cache_ttl_sec,
            default_limit=settings.default_search_limit,
        )
        registry.register(module)
    await registry.initialize_all()

    _core = MemoryCore(
        settings=settings,
        provider=provider,
        cache_backend=cache_backend,
        embeddings=embeddings,
        registry=registry,
        cmi=cmi,
    )
    logger.log_operation("runtime.init", "success", {
        "provider": provider.name,
        "modules": registry.list_ids(),
        "cache": type(cache_backend).__name__ if cache_backend else None,
    })
    return _core


def get_core() -> MemoryCore:
    if _core is None:
        raise ConfigurationError("Memory core is not initialized; call init() first")
    return _core


async def shutdown() -> None:
    global _core
    if _core is None:
        return
    await _core.registry.shutdown_all()
    logger.log_operation("runtime.shutdown", "success")
    _core = None
