"""
Shared storage contract for domain memory modules.

A module owns one SQLite table of MemoryRecords. BaseModule implements the
storage, search and index bookkeeping once; domain modules supply metadata
enrichment and content generation.
"""

from abc import ABC, abstractmethod
import asyncio
import copy
import hashlib
import json
import re
import sqlite3
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from ..core import dao
from ..core.db import ensure_memory_table, get_db
from ..core.errors import EmbeddingGenerationError, ModuleError, RecordNotFound
from ..core.schema import IndexPayload, MemoryRecord, MemoryUpdate, ModuleStats, SearchOptions
from ..util.logging import logger
from ..vector.cache import ICacheBackend
from ..vector.service import EmbeddingService

SEARCH_KEY_PREFIX = "search:"

TITLE_MAX_CHARS = 50
SUMMARY_MAX_CHARS = 100
MAX_KEYWORDS = 10
STOP_WORDS = {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "with", "from", "this", "that"}


class BaseModule(ABC):
    """Base class for domain memory modules."""

    default_type = "memory"

    def __init__(self, module_id: str, db_path: str, embeddings: EmbeddingService, cmi=None,
                 cache_backend: Optional[ICacheBackend] = None, table: Optional[str] = None,
                 participates_in_index: bool = True, search_cache_ttl: int = 300,
                 default_limit: int = 10, clock=dao.utcnow):
        self.module_id = module_id
        self.table = table or f"{module_id}_memories"
        self.db_path = db_path
        self.embeddings = embeddings
        self.cmi = cmi
        self.cache_backend = cache_backend
        self.participates_in_index = participates_in_index
        self.search_cache_ttl = search_cache_ttl
        self.default_limit = default_limit
        self._clock = clock

    # ============= Domain hooks =============

    @abstractmethod
    def process_metadata(self, content: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Return enriched metadata. Must not perform I/O or mutate its input."""
        pass

    @abstractmethod
    def generate_content(self, entity: Dict[str, Any]) -> str:
        """Deterministic text projection of a structured entity."""
        pass

    def format_result(self, record: MemoryRecord) -> MemoryRecord:
        """Adjust a record before it is returned to a caller."""
        return record

    def _category_labels(self, metadata: Dict[str, Any]) -> List[str]:
        categories = metadata.get("categories")
        if isinstance(categories, list) and categories:
            return [str(c) for c in categories]
        return [metadata["type"]] if metadata.get("type") else []

    # ============= Lifecycle =============

    async def initialize(self) -> None:
        await asyncio.to_thread(ensure_memory_table, self.db_path, self.table)
        logger.log_module_operation(self.module_id, "initialize", owner_id="*", details={"table": self.table})

    async def shutdown(self) -> None:
        logger.log_module_operation(self.module_id, "shutdown", owner_id="*")

    async def health_check(self) -> bool:
        def check():
            with get_db(self.db_path) as conn:
                conn.execute(f"SELECT 1 FROM {self.table} LIMIT 1")
            return True

        try:
            return await asyncio.to_thread(check)
        except sqlite3.Error as e:
            logger.error(f"Health check failed for module {self.module_id}: {e}")
            return False

    # ============= Storage contract =============

    def _prepare(self, content: Optional[str], metadata: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        raw = dict(metadata)
        if not raw.get("type"):
            raw["type"] = self.default_type

        content = content or ""
        enriched = self.process_metadata(content, raw)
        if not enriched.get("type"):
            enriched["type"] = raw["type"]

        if not content.strip():
            content = self.generate_content(enriched)
        if not content or not content.strip():
            raise ValueError("Either content or metadata that generates content is required")
        return content, enriched

    async def _run(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            raise ModuleError(self.module_id, f"{operation.upper()}_ERROR", str(e), cause=e) from e

    async def store(self, owner_id: str, content: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> MemoryRecord:
        """Enrich, embed and persist a record, then index it."""
        content, enriched = self._prepare(content, metadata or {})
        embedding = await self.embeddings.generate_full(content)

        record_id = str(uuid.uuid4())
        record = await self._run(
            "store", dao.insert_memory, self.db_path, self.table, record_id, owner_id,
            content, enriched, embedding, self._clock()
        )

        await self._index_record(record)
        await self.invalidate_search_cache(owner_id)

        logger.log_module_operation(self.module_id, "store", owner_id, record_id, details={"type": enriched["type"]})
        return record

    async def get(self, owner_id: str, record_id: str) -> Optional[MemoryRecord]:
        """Fetch a record and count the access. Returns None when absent or owned by someone else."""
        record = await self._run(
            "get", dao.get_and_touch_memory, self.db_path, self.table, owner_id, record_id, self._clock()
        )
        if record is None:
            return None
        return self.format_result(record)

    async def update(self, owner_id: str, record_id: str, partial) -> bool:
        """Apply a partial update. Returns False when the record does not exist for this owner."""
        if isinstance(partial, dict):
            partial = MemoryUpdate(**partial)
        current = await self._run("update", dao.fetch_memory, self.db_path, self.table, owner_id, record_id)
        if current is None:
            return False
        if partial.is_empty():
            return True

        content_changed = partial.content is not None and partial.content != current.content

        metadata = None
        if partial.metadata is not None or content_changed:
            merged = dict(current.metadata)
            merged.update(partial.metadata or {})
            metadata = self.process_metadata(partial.content or current.content, merged)
            if not metadata.get("type"):
                metadata["type"] = current.metadata.get("type") or self.default_type

        embedding = None
        if content_changed:
            embedding = await self.embeddings.generate_full(partial.content)

        try:
            await self._run(
                "update", dao.update_memory, self.db_path, self.table, owner_id, record_id,
                partial.content, metadata, embedding, self._clock()
            )
        except RecordNotFound:
            # Deleted between read and write
            return False

        refreshed = await self._run("update", dao.fetch_memory, self.db_path, self.table, owner_id, record_id)
        if refreshed is not None:
            await self._index_record(refreshed)
        await self.invalidate_search_cache(owner_id)

        logger.log_module_operation(self.module_id, "update", owner_id, record_id,
                                    details={"content_changed": embedding is not None,
                                             "metadata_changed": metadata is not None})
        return True

    async def delete(self, owner_id: str, record_id: str) -> bool:
        """Delete a record and its index entry. Returns False when nothing was deleted."""
        try:
            await self._run("delete", dao.delete_memory, self.db_path, self.table, owner_id, record_id)
        except RecordNotFound:
            return False

        if self.cmi is not None:
            try:
                await self.cmi.remove_index(owner_id, self.module_id, record_id)
            except Exception as e:
                logger.log_index_operation("remove", owner_id, self.module_id, record_id, "failed", {"error": str(e)})
        await self.invalidate_search_cache(owner_id)

        logger.log_module_operation(self.module_id, "delete", owner_id, record_id)
        return True

    # ============= Search =============

    async def search_by_embedding(self, owner_id: str, vector: List[float],
                                  options: Optional[SearchOptions] = None) -> List[MemoryRecord]:
        """Rank the owner's records by cosine similarity to vector."""
        options = options or SearchOptions(limit=self.default_limit)
        candidates = await self._run(
            "search", dao.query_by_metadata, self.db_path, self.table, owner_id, options.filters, None, True
        )

        scored = []
        for record in candidates:
            score = self.embeddings.cosine_similarity(vector, record.embedding)
            if options.min_score is not None and score < options.min_score:
                continue
            scored.append((score, record))

        scored.sort(key=lambda item: item[0], reverse=True)
        scored = scored[:options.limit]

        results = []
        for score, record in scored:
            record.score = score
            results.append(record)
        await self._record_access(owner_id, results)
        return [self.format_result(record) for record in results]

    async def search_by_metadata(self, owner_id: str, predicate: Optional[Dict[str, Any]] = None,
                                 limit: Optional[int] = None) -> List[MemoryRecord]:
        """Exact-match metadata filter, newest first."""
        records = await self._run(
            "search", dao.query_by_metadata, self.db_path, self.table, owner_id, predicate, limit
        )
        return [self.format_result(record) for record in records]

    async def search(self, owner_id: str, query: str, options: Optional[SearchOptions] = None) -> List[MemoryRecord]:
        """Semantic search with result caching and a metadata fallback when embedding fails."""
        options = options or SearchOptions(limit=self.default_limit)
        cache_key = self._search_cache_key(owner_id, query, options)

        cached = await self._cache_get(cache_key)
        if cached is not None:
            return await self._load_cached_results(owner_id, cached)

        try:
            vector = await self.embeddings.generate_full(query)
        except EmbeddingGenerationError as e:
            logger.log_module_operation(self.module_id, "search", owner_id, status="degraded",
                                        details={"fallback": "metadata", "error": str(e)})
            return await self.search_by_metadata(owner_id, options.filters, options.limit)

        results = await self.search_by_embedding(owner_id, vector, options)
        if results:
            await self._cache_set(cache_key, [[record.id, record.score] for record in results])
        return results

    async def _load_cached_results(self, owner_id: str, cached: List[List[Any]]) -> List[MemoryRecord]:
        ids = [record_id for record_id, _ in cached]
        rows = await self._run("search", dao.fetch_memories_by_ids, self.db_path, self.table, owner_id, ids)

        results = []
        for record_id, score in cached:
            record = rows.get(record_id)
            if record is None:
                continue
            record.score = score
            results.append(record)
        await self._record_access(owner_id, results)
        return [self.format_result(record) for record in results]

    async def _record_access(self, owner_id: str, records: List[MemoryRecord]) -> None:
        if not records:
            return
        now = self._clock()
        await self._run(
            "search", dao.touch_memories, self.db_path, self.table, owner_id, [r.id for r in records], now
        )
        for record in records:
            record.access_count += 1
            record.last_accessed = now

    # ============= Search result cache =============

    def _search_cache_key(self, owner_id: str, query: str, options: SearchOptions) -> str:
        params = json.dumps([query, options.model_dump()], sort_keys=True, default=str)
        digest = hashlib.sha256(params.encode("utf-8")).hexdigest()[:16]
        return f"{SEARCH_KEY_PREFIX}{self.module_id}:{owner_id}:{digest}"

    async def _cache_get(self, key: str) -> Optional[List[List[Any]]]:
        if self.cache_backend is None:
            return None
        try:
            raw = await self.cache_backend.get(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.log_cache_event("search_get", key, {"error": str(e)}, status="failed")
            return None

    async def _cache_set(self, key: str, value: List[List[Any]]) -> None:
        if self.cache_backend is None:
            return
        try:
            await self.cache_backend.set(key, json.dumps(value), self.search_cache_ttl)
        except Exception as e:
            logger.log_cache_event("search_set", key, {"error": str(e)}, status="failed")

    async def invalidate_search_cache(self, owner_id: str) -> None:
        if self.cache_backend is None:
            return
        prefix = f"{SEARCH_KEY_PREFIX}{self.module_id}:{owner_id}:"
        try:
            await self.cache_backend.delete_prefix(prefix)
        except Exception as e:
            logger.log_cache_event("search_invalidate", prefix, {"error": str(e)}, status="failed")

    # ============= Index bookkeeping =============

    def extract_title(self, content: str) -> str:
        first_line = content.strip().split("\n")[0]
        return first_line[:TITLE_MAX_CHARS] + "..." if len(first_line) > TITLE_MAX_CHARS else first_line

    def generate_summary(self, content: str) -> str:
        content = content.strip()
        return content[:SUMMARY_MAX_CHARS] + "..." if len(content) > SUMMARY_MAX_CHARS else content

    def extract_keywords(self, content: str) -> List[str]:
        words = re.split(r"\W+", content.lower())
        keywords = [w for w in words if len(w) > 3 and w not in STOP_WORDS]
        return list(dict.fromkeys(keywords))[:MAX_KEYWORDS]

    def build_index_entry(self, record: MemoryRecord) -> IndexPayload:
        """Title, summary, keywords and compact vector for the central index."""
        title = record.metadata.get("title") or self.extract_title(record.content)
        compact = self.embeddings.reduce(record.embedding)
        return IndexPayload(
            title=str(title),
            summary=self.generate_summary(record.content),
            compact_embedding=compact,
            keywords=self.extract_keywords(record.content),
        )

    async def _index_record(self, record: MemoryRecord) -> None:
        if not self.participates_in_index or self.cmi is None or not record.embedding:
            return
        try:
            payload = self.build_index_entry(record)
            await self.cmi.upsert_index(record.owner_id, self.module_id, record.id, payload)
        except Exception as e:
            # Record stays directly retrievable; reconcile_index restores the entry
            logger.log_index_operation("upsert", record.owner_id, self.module_id, record.id, "failed",
                                       {"error": str(e)})

    # ============= Maintenance =============

    async def list_record_ids(self, owner_id: str) -> List[str]:
        return await self._run("list", dao.list_memory_ids, self.db_path, self.table, owner_id)

    async def list_owner_ids(self) -> List[str]:
        return await self._run("list", dao.list_owner_ids, self.db_path, self.table)

    async def fetch_record(self, owner_id: str, record_id: str) -> Optional[MemoryRecord]:
        """Read a record without counting an access."""
        return await self._run("get", dao.fetch_memory, self.db_path, self.table, owner_id, record_id)

    async def reindex_record(self, record: MemoryRecord) -> MemoryRecord:
        """Embed a record that has no stored vector, then index it."""
        if not record.embedding:
            embedding = await self.embeddings.generate_full(record.content)
            await self._run(
                "update", dao.update_memory, self.db_path, self.table, record.owner_id, record.id,
                None, None, embedding, record.updated_at
            )
            record.embedding = embedding
        if self.cmi is not None:
            await self.cmi.upsert_index(record.owner_id, self.module_id, record.id, self.build_index_entry(record))
        return record

    async def calculate_stats(self, owner_id: str) -> ModuleStats:
        count, avg_access, last_accessed, metadata_rows = await self._run(
            "stats", dao.memory_stats, self.db_path, self.table, owner_id
        )

        counter: Counter = Counter()
        for metadata in metadata_rows:
            counter.update(self._category_labels(metadata))

        return ModuleStats(
            total_memories=count,
            average_access_count=avg_access,
            most_frequent_categories=[label for label, _ in counter.most_common(5)],
            last_accessed=last_accessed if count else None,
        )

    @staticmethod
    def _copy_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
        return copy.deepcopy(metadata)
