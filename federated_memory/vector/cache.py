"""
Best-effort key/value caching for embeddings and module search results.

Backends speak a small async string API and raise CacheUnavailable when they
cannot serve a request. EmbeddingCache sits on top and never lets a cache
fault reach the caller: failures are logged and treated as a miss.
"""

from abc import ABC, abstractmethod
import asyncio
import hashlib
import json
import sqlite3
import time
import unicodedata
from typing import Dict, List, Optional, Tuple

from ..core.db import get_db
from ..core.errors import CacheUnavailable
from ..util.logging import logger

EMBEDDING_KEY_PREFIX = "embedding:"
DEFAULT_TTL_SECONDS = 86400


class ICacheBackend(ABC):
    """Abstract interface for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix and return how many were removed."""
        pass


class InMemoryCacheBackend(ICacheBackend):
    """Process-local dictionary cache with monotonic expiry."""

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self):
        return len(self._entries)


class SqliteCacheBackend(ICacheBackend):
    """Cache backed by the embedding_cache table. Expired rows are dropped lazily on read."""

    def __init__(self, db_path: str, clock=time.time):
        self.db_path = db_path
        self._clock = clock

    def _get(self, key: str) -> Optional[str]:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value, expires_at FROM embedding_cache WHERE key = ?", (key,))
            row = cursor.fetchone()
            if row is None:
                return None
            if row["expires_at"] <= self._clock():
                cursor.execute("DELETE FROM embedding_cache WHERE key = ?", (key,))
                conn.commit()
                return None
            return row["value"]

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO embedding_cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._clock() + ttl_seconds)
            )
            conn.commit()

    def _delete_prefix(self, prefix: str) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM embedding_cache WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix)
            )
            conn.commit()
            return cursor.rowcount

    def _purge_expired(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM embedding_cache WHERE expires_at <= ?", (self._clock(),))
            conn.commit()
            return cursor.rowcount

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            raise CacheUnavailable(f"SQLite cache error: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        return await self._run(self._get, key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run(self._set, key, value, ttl_seconds)

    async def delete_prefix(self, prefix: str) -> int:
        return await self._run(self._delete_prefix, prefix)

    async def purge_expired(self) -> int:
        """Remove every expired row. Returns the number of rows removed."""
        return await self._run(self._purge_expired)


class EmbeddingCache:
    """Content-addressed embedding cache over any backend.

    Keys have the form ``embedding:{provider}:{dimension}:{hash}`` where hash
    is the first 16 hex chars of SHA-256 over the normalized text. Two texts
    colliding at that truncation would share a vector; the risk is accepted.
    """

    def __init__(self, backend: ICacheBackend, ttl_seconds: int = DEFAULT_TTL_SECONDS, timeout: float = 1.0):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout

    @staticmethod
    def normalize(text: str) -> str:
        return unicodedata.normalize("NFC", text).strip()

    @classmethod
    def content_hash(cls, text: str) -> str:
        return hashlib.sha256(cls.normalize(text).encode("utf-8")).hexdigest()[:16]

    @classmethod
    def make_key(cls, provider: str, dimension: Optional[int], text: str) -> str:
        return f"{EMBEDDING_KEY_PREFIX}{provider}:{dimension or 'default'}:{cls.content_hash(text)}"

    async def get(self, key: str) -> Optional[List[float]]:
        try:
            raw = await asyncio.wait_for(self.backend.get(key), timeout=self.timeout)
        except Exception as e:
            logger.log_cache_event("get", key, {"error": str(e)}, status="failed")
            return None

        if raw is None:
            logger.log_cache_event("miss", key)
            return None

        try:
            vector = json.loads(raw)
            if not isinstance(vector, list) or not all(isinstance(x, (int, float)) for x in vector):
                raise ValueError("cached value is not a vector")
        except ValueError as e:
            logger.log_cache_event("get", key, {"error": f"corrupted entry: {e}"}, status="failed")
            return None

        logger.log_cache_event("hit", key)
        return [float(x) for x in vector]

    async def set(self, key: str, vector: List[float], ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        try:
            await asyncio.wait_for(self.backend.set(key, json.dumps(vector), ttl), timeout=self.timeout)
        except Exception as e:
            logger.log_cache_event("set", key, {"error": str(e)}, status="failed")

    async def invalidate_prefix(self, prefix: str) -> int:
        try:
            removed = await asyncio.wait_for(self.backend.delete_prefix(prefix), timeout=self.timeout)
        except Exception as e:
            logger.log_cache_event("invalidate", prefix, {"error": str(e)}, status="failed")
            return 0
        logger.log_cache_event("invalidate", prefix, {"removed": removed})
        return removed
