"""
Central Memory Index: one compact pointer per record across all modules.

Entries are created, refreshed and removed only by the owning module. The
index ranks candidates cheaply with compact vectors; resolve() then asks
each module for the full record and drops pointers that no longer resolve.
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from ..core import dao
from ..core.errors import DanglingIndexEntry, DimensionMismatchError
from ..core.schema import (
    IndexEntry,
    IndexPayload,
    MemoryRecord,
    MemoryRelationship,
    ModuleRoute,
    RelatedMemory,
    RouteCandidate,
    RouteOptions,
)
from ..util.logging import logger
from ..vector.service import EmbeddingService

ROUTING_SIMILARITY_THRESHOLD = 0.7


class CentralMemoryIndex:
    """Cross-module index over compact embeddings."""

    def __init__(self, db_path: str, embeddings: EmbeddingService, registry, clock=dao.utcnow):
        self.db_path = db_path
        self.embeddings = embeddings
        self.registry = registry
        self._clock = clock

    async def upsert_index(self, owner_id: str, module_id: str, remote_memory_id: str,
                           payload: Union[IndexPayload, Dict[str, Any]]) -> None:
        """Create or overwrite the entry for one record. Calling twice with the same key never duplicates."""
        if isinstance(payload, dict):
            payload = IndexPayload(**payload)
        if len(payload.compact_embedding) != self.embeddings.compact_dimension:
            raise DimensionMismatchError(self.embeddings.compact_dimension, len(payload.compact_embedding))

        await asyncio.to_thread(
            dao.upsert_index_entry, self.db_path, owner_id, module_id, remote_memory_id,
            payload.compact_embedding, payload.title, payload.summary, payload.keywords, self._clock()
        )
        logger.log_index_operation("upsert", owner_id, module_id, remote_memory_id)

    async def remove_index(self, owner_id: str, module_id: str, remote_memory_id: str) -> bool:
        """Delete the entry and every relationship touching it. Returns whether an entry existed."""
        unlinked = await asyncio.to_thread(
            dao.delete_relationships_for, self.db_path, owner_id, module_id, remote_memory_id
        )
        removed = await asyncio.to_thread(dao.delete_index_entry, self.db_path, owner_id, module_id, remote_memory_id)
        logger.log_index_operation("remove", owner_id, module_id, remote_memory_id,
                                   details={"removed": removed, "relationships_removed": unlinked})
        return removed

    async def get_entry(self, owner_id: str, module_id: str, remote_memory_id: str) -> Optional[IndexEntry]:
        return await asyncio.to_thread(dao.fetch_index_entry, self.db_path, owner_id, module_id, remote_memory_id)

    async def list_entries(self, owner_id: str, module_ids: Optional[List[str]] = None) -> List[IndexEntry]:
        return await asyncio.to_thread(dao.fetch_index_entries, self.db_path, owner_id, module_ids)

    async def route(self, owner_id: str, query: str, options: Optional[RouteOptions] = None) -> List[RouteCandidate]:
        """Rank the owner's index entries against query.

        Sorted by score descending; equal scores put the most recently
        accessed entry first.
        """
        options = options or RouteOptions()
        query_vector = await self.embeddings.generate_compact(query)
        entries = await self.list_entries(owner_id, options.module_ids)

        candidates = []
        for entry in entries:
            score = self.embeddings.cosine_similarity(query_vector, entry.compact_embedding)
            if options.min_score is not None and score < options.min_score:
                continue
            candidates.append(RouteCandidate(
                module_id=entry.module_id,
                remote_memory_id=entry.remote_memory_id,
                score=score,
                title=entry.title,
                summary=entry.summary,
                last_accessed=entry.last_accessed,
            ))

        candidates.sort(key=lambda c: c.last_accessed.timestamp() if c.last_accessed else 0.0, reverse=True)
        candidates.sort(key=lambda c: c.score, reverse=True)

        logger.log_index_operation("route", owner_id, details={"scanned": len(entries), "returned": min(len(candidates), options.limit)})
        return candidates[:options.limit]

    async def _resolve_one(self, owner_id: str, candidate: RouteCandidate) -> MemoryRecord:
        module = self.registry.get(candidate.module_id)
        if module is None:
            raise DanglingIndexEntry(candidate.module_id, candidate.remote_memory_id, "module not registered")

        record = await module.get(owner_id, candidate.remote_memory_id)
        if record is None:
            raise DanglingIndexEntry(candidate.module_id, candidate.remote_memory_id)

        record.module_id = candidate.module_id
        record.score = candidate.score
        return record

    async def resolve(self, owner_id: str, candidates: List[RouteCandidate], prune_dangling: bool = False) -> List[MemoryRecord]:
        """Fetch the record behind each candidate, in order, skipping dangling pointers."""
        records = []
        for candidate in candidates:
            try:
                record = await self._resolve_one(owner_id, candidate)
            except DanglingIndexEntry as e:
                logger.log_index_operation("resolve", owner_id, e.module_id, e.remote_memory_id, "dropped",
                                           {"reason": e.reason})
                if prune_dangling:
                    await self.remove_index(owner_id, e.module_id, e.remote_memory_id)
                continue

            await asyncio.to_thread(
                dao.touch_index_entry, self.db_path, owner_id, candidate.module_id,
                candidate.remote_memory_id, self._clock()
            )
            records.append(record)
        return records

    async def search(self, owner_id: str, query: str, options: Optional[RouteOptions] = None,
                     prune_dangling: bool = False) -> List[MemoryRecord]:
        """Route then resolve: cross-module search returning full records."""
        candidates = await self.route(owner_id, query, options)
        return await self.resolve(owner_id, candidates, prune_dangling=prune_dangling)

    async def route_modules(self, owner_id: str, query: str, limit: int = 3) -> List[ModuleRoute]:
        """Suggest which modules to query.

        An entry counts toward its module when the query mentions one of its
        keywords or its compact similarity exceeds ROUTING_SIMILARITY_THRESHOLD.
        Confidence is the mean similarity of the counted entries.
        """
        if limit < 1:
            return []
        query_vector = await self.embeddings.generate_compact(query)
        lowered = query.lower()

        scores: Dict[str, List[float]] = {}
        keywords: Dict[str, List[str]] = {}
        for entry in await self.list_entries(owner_id):
            score = self.embeddings.cosine_similarity(query_vector, entry.compact_embedding)
            matched = [kw for kw in entry.keywords if kw and kw.lower() in lowered]
            if not matched and score <= ROUTING_SIMILARITY_THRESHOLD:
                continue
            scores.setdefault(entry.module_id, []).append(score)
            module_keywords = keywords.setdefault(entry.module_id, [])
            for kw in matched:
                if kw not in module_keywords:
                    module_keywords.append(kw)

        routes = [
            ModuleRoute(module_id=module_id, confidence=sum(values) / len(values), keywords=keywords[module_id])
            for module_id, values in scores.items()
        ]
        routes.sort(key=lambda route: (-route.confidence, route.module_id))

        logger.log_index_operation("route_modules", owner_id, details={"modules": [r.module_id for r in routes[:limit]]})
        return routes[:limit]

    # ============= Relationships =============

    async def create_relationship(self, owner_id: str, source: Tuple[str, str], target: Tuple[str, str],
                                  relationship_type: str, strength: float = 0.5,
                                  metadata: Optional[Dict[str, Any]] = None) -> MemoryRelationship:
        """Link two records, each given as (module_id, memory_id).

        Raises:
            ValueError: blank relationship type or strength outside [0, 1]
        """
        if not relationship_type or not relationship_type.strip():
            raise ValueError("relationship_type cannot be blank")
        if not 0.0 <= strength <= 1.0:
            raise ValueError("strength must be between 0 and 1")

        relationship = MemoryRelationship(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            source_module=source[0],
            source_memory_id=source[1],
            target_module=target[0],
            target_memory_id=target[1],
            relationship_type=relationship_type,
            strength=float(strength),
            metadata=dict(metadata or {}),
            created_at=self._clock(),
        )
        await asyncio.to_thread(dao.insert_relationship, self.db_path, relationship)
        logger.log_index_operation("relate", owner_id, source[0], source[1], details={
            "target": f"{target[0]}/{target[1]}", "type": relationship_type,
        })
        return relationship

    async def get_related(self, owner_id: str, module_id: str, memory_id: str,
                          relationship_types: Optional[List[str]] = None, limit: int = 5) -> List[RelatedMemory]:
        """Records linked to one record in either direction, strongest link first."""
        if limit < 1:
            return []
        pairs = await asyncio.to_thread(
            dao.fetch_related, self.db_path, owner_id, module_id, memory_id, relationship_types, limit
        )
        return [RelatedMemory(relationship=relationship, entry=entry) for relationship, entry in pairs]

    async def module_stats(self, owner_id: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(dao.index_stats, self.db_path, owner_id)
