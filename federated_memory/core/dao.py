"""
Data access for module memory tables and the central memory index.

All functions here are synchronous and open their own connection; async
callers run them through asyncio.to_thread. Vectors and metadata are stored
as JSON text, metadata predicates use SQLite's json_extract.
"""

import json
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .db import get_db, validate_table_name
from .errors import RecordNotFound
from .schema import IndexEntry, MemoryRecord, MemoryRelationship

METADATA_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

MEMORY_COLUMNS = "id, owner_id, content, metadata, embedding, access_count, last_accessed, created_at, updated_at"
INDEX_COLUMNS = ("owner_id, module_id, remote_memory_id, compact_embedding, title, summary, keywords, "
                 "access_count, last_accessed, created_at, updated_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def row_to_record(row: sqlite3.Row) -> MemoryRecord:
    """Convert a memory table row to a MemoryRecord."""
    embedding = row["embedding"]
    return MemoryRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        content=row["content"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        embedding=json.loads(embedding) if embedding else None,
        access_count=row["access_count"],
        last_accessed=_parse_ts(row["last_accessed"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def row_to_index_entry(row: sqlite3.Row) -> IndexEntry:
    """Convert a memory_index row to an IndexEntry."""
    return IndexEntry(
        owner_id=row["owner_id"],
        module_id=row["module_id"],
        remote_memory_id=row["remote_memory_id"],
        compact_embedding=json.loads(row["compact_embedding"]),
        title=row["title"],
        summary=row["summary"],
        keywords=json.loads(row["keywords"]) if row["keywords"] else [],
        access_count=row["access_count"],
        last_accessed=_parse_ts(row["last_accessed"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def build_metadata_filter(filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
    """Translate equality filters into a SQL fragment over the metadata column.

    A list value matches any of its elements. None values are ignored.
    """
    clauses = []
    params: List[Any] = []

    for key, value in (filters or {}).items():
        if value is None:
            continue
        if not METADATA_KEY_PATTERN.match(key):
            raise ValueError(f"Invalid metadata filter key: {key!r}")

        path = f"$.{key}"
        if isinstance(value, (list, tuple, set)):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"json_extract(metadata, ?) IN ({placeholders})")
            params.append(path)
            params.extend(values)
        else:
            clauses.append("json_extract(metadata, ?) = ?")
            params.extend([path, value])

    return " AND ".join(clauses), params


# ============= Module memory tables =============

def insert_memory(db_path: str, table: str, record_id: str, owner_id: str, content: str,
                  metadata: Dict[str, Any], embedding: Optional[List[float]], now: datetime = None) -> MemoryRecord:
    """Insert a new memory row and return it."""
    table = validate_table_name(table)
    now = now or utcnow()

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"INSERT INTO {table} ({MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)",
            (record_id, owner_id, content, json.dumps(metadata),
             json.dumps(embedding) if embedding is not None else None,
             _ts(now), _ts(now), _ts(now))
        )
        conn.commit()

    return MemoryRecord(
        id=record_id,
        owner_id=owner_id,
        content=content,
        metadata=metadata,
        embedding=embedding,
        access_count=0,
        last_accessed=now,
        created_at=now,
        updated_at=now,
    )


def fetch_memory(db_path: str, table: str, owner_id: str, record_id: str) -> Optional[MemoryRecord]:
    """Fetch a memory row without touching its access statistics."""
    table = validate_table_name(table)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"SELECT {MEMORY_COLUMNS} FROM {table} WHERE id = ? AND owner_id = ?",
            (record_id, owner_id)
        )
        row = cursor.fetchone()
        return row_to_record(row) if row else None


def fetch_memories_by_ids(db_path: str, table: str, owner_id: str, record_ids: Iterable[str]) -> Dict[str, MemoryRecord]:
    """Fetch several memory rows, keyed by id. Missing ids are simply absent."""
    table = validate_table_name(table)
    record_ids = list(record_ids)
    if not record_ids:
        return {}

    placeholders = ", ".join("?" for _ in record_ids)
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"SELECT {MEMORY_COLUMNS} FROM {table} WHERE owner_id = ? AND id IN ({placeholders})",
            [owner_id] + record_ids
        )
        return {row["id"]: row_to_record(row) for row in cursor.fetchall()}


def touch_memories(db_path: str, table: str, owner_id: str, record_ids: Iterable[str], now: datetime = None) -> int:
    """Increment access_count and refresh last_accessed for the given rows."""
    table = validate_table_name(table)
    record_ids = list(record_ids)
    if not record_ids:
        return 0
    now = now or utcnow()

    placeholders = ", ".join("?" for _ in record_ids)
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"UPDATE {table} SET access_count = access_count + 1, last_accessed = ? "
            f"WHERE owner_id = ? AND id IN ({placeholders})",
            [_ts(now), owner_id] + record_ids
        )
        conn.commit()
        return cursor.rowcount


def get_and_touch_memory(db_path: str, table: str, owner_id: str, record_id: str, now: datetime = None) -> Optional[MemoryRecord]:
    """Record an access and return the row as it stands afterwards."""
    table = validate_table_name(table)
    now = now or utcnow()

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"UPDATE {table} SET access_count = access_count + 1, last_accessed = ? WHERE id = ? AND owner_id = ?",
            (_ts(now), record_id, owner_id)
        )
        if cursor.rowcount == 0:
            return None
        cursor.execute(
            f"SELECT {MEMORY_COLUMNS} FROM {table} WHERE id = ? AND owner_id = ?",
            (record_id, owner_id)
        )
        row = cursor.fetchone()
        conn.commit()
        return row_to_record(row) if row else None


def update_memory(db_path: str, table: str, owner_id: str, record_id: str, content: Optional[str] = None,
                  metadata: Optional[Dict[str, Any]] = None, embedding: Optional[List[float]] = None,
                  now: datetime = None) -> None:
    """Update the given columns of a memory row.

    Raises:
        RecordNotFound: no row with this id belongs to owner_id
    """
    table = validate_table_name(table)
    now = now or utcnow()

    assignments = ["updated_at = ?"]
    params: List[Any] = [_ts(now)]
    if content is not None:
        assignments.append("content = ?")
        params.append(content)
    if metadata is not None:
        assignments.append("metadata = ?")
        params.append(json.dumps(metadata))
    if embedding is not None:
        assignments.append("embedding = ?")
        params.append(json.dumps(embedding))

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND owner_id = ?",
            params + [record_id, owner_id]
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise RecordNotFound(table, record_id, owner_id)


def delete_memory(db_path: str, table: str, owner_id: str, record_id: str) -> None:
    """Delete a memory row.

    Raises:
        RecordNotFound: no row with this id belongs to owner_id
    """
    table = validate_table_name(table)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(f"DELETE FROM {table} WHERE id = ? AND owner_id = ?", (record_id, owner_id))
        conn.commit()
        if cursor.rowcount == 0:
            raise RecordNotFound(table, record_id, owner_id)


def query_by_metadata(db_path: str, table: str, owner_id: str, predicate: Optional[Dict[str, Any]] = None,
                      limit: Optional[int] = None, embedded_only: bool = False) -> List[MemoryRecord]:
    """Exact-match metadata query for one owner, newest first."""
    table = validate_table_name(table)
    clause, params = build_metadata_filter(predicate)

    sql = f"SELECT {MEMORY_COLUMNS} FROM {table} WHERE owner_id = ?"
    if embedded_only:
        sql += " AND embedding IS NOT NULL"
    if clause:
        sql += f" AND {clause}"
    sql += " ORDER BY updated_at DESC, id"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(sql, [owner_id] + params)
        return [row_to_record(row) for row in cursor.fetchall()]


def list_memory_ids(db_path: str, table: str, owner_id: str) -> List[str]:
    table = validate_table_name(table)
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(f"SELECT id FROM {table} WHERE owner_id = ? ORDER BY created_at", (owner_id,))
        return [row[0] for row in cursor.fetchall()]


def list_owner_ids(db_path: str, table: str) -> List[str]:
    table = validate_table_name(table)
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(f"SELECT DISTINCT owner_id FROM {table} ORDER BY owner_id")
        return [row[0] for row in cursor.fetchall()]


def memory_stats(db_path: str, table: str, owner_id: str) -> Tuple[int, float, Optional[datetime], List[Dict[str, Any]]]:
    """Return (count, average access count, latest access, metadata of every row) for one owner."""
    table = validate_table_name(table)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"SELECT COUNT(*), AVG(access_count), MAX(last_accessed) FROM {table} WHERE owner_id = ?",
            (owner_id,)
        )
        count, avg_access, last_accessed = cursor.fetchone()

        cursor.execute(f"SELECT metadata FROM {table} WHERE owner_id = ?", (owner_id,))
        metadata_rows = [json.loads(row[0]) for row in cursor.fetchall() if row[0]]

    return count or 0, float(avg_access or 0.0), _parse_ts(last_accessed), metadata_rows


# ============= Central memory index =============

def upsert_index_entry(db_path: str, owner_id: str, module_id: str, remote_memory_id: str,
                       compact_embedding: List[float], title: str, summary: str,
                       keywords: List[str], now: datetime = None) -> None:
    """Create or overwrite the index entry for one record."""
    now = now or utcnow()

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f'''
            INSERT INTO memory_index ({INDEX_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            ON CONFLICT(owner_id, module_id, remote_memory_id) DO UPDATE SET
                compact_embedding = excluded.compact_embedding,
                title = excluded.title,
                summary = excluded.summary,
                keywords = excluded.keywords,
                updated_at = excluded.updated_at
            ''',
            (owner_id, module_id, remote_memory_id, json.dumps(compact_embedding), title, summary,
             json.dumps(keywords), _ts(now), _ts(now), _ts(now))
        )
        conn.commit()


def delete_index_entry(db_path: str, owner_id: str, module_id: str, remote_memory_id: str) -> bool:
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "DELETE FROM memory_index WHERE owner_id = ? AND module_id = ? AND remote_memory_id = ?",
            (owner_id, module_id, remote_memory_id)
        )
        conn.commit()
        return cursor.rowcount > 0


def fetch_index_entry(db_path: str, owner_id: str, module_id: str, remote_memory_id: str) -> Optional[IndexEntry]:
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"SELECT {INDEX_COLUMNS} FROM memory_index WHERE owner_id = ? AND module_id = ? AND remote_memory_id = ?",
            (owner_id, module_id, remote_memory_id)
        )
        row = cursor.fetchone()
        return row_to_index_entry(row) if row else None


def fetch_index_entries(db_path: str, owner_id: str, module_ids: Optional[List[str]] = None) -> List[IndexEntry]:
    """All index entries for an owner, optionally restricted to a module subset."""
    sql = f"SELECT {INDEX_COLUMNS} FROM memory_index WHERE owner_id = ?"
    params: List[Any] = [owner_id]
    if module_ids is not None:
        if not module_ids:
            return []
        sql += f" AND module_id IN ({', '.join('?' for _ in module_ids)})"
        params.extend(module_ids)
    sql += " ORDER BY created_at, module_id, remote_memory_id"

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(sql, params)
        return [row_to_index_entry(row) for row in cursor.fetchall()]


def touch_index_entry(db_path: str, owner_id: str, module_id: str, remote_memory_id: str, now: datetime = None) -> None:
    now = now or utcnow()
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE memory_index SET access_count = access_count + 1, last_accessed = ? "
            "WHERE owner_id = ? AND module_id = ? AND remote_memory_id = ?",
            (_ts(now), owner_id, module_id, remote_memory_id)
        )
        conn.commit()


def index_stats(db_path: str, owner_id: str) -> List[Dict[str, Any]]:
    """Per-module entry counts and total accesses for one owner."""
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT module_id, COUNT(*), SUM(access_count) FROM memory_index "
            "WHERE owner_id = ? GROUP BY module_id ORDER BY module_id",
            (owner_id,)
        )
        return [
            {"module_id": module_id, "memory_count": count, "total_access": total or 0}
            for module_id, count, total in cursor.fetchall()
        ]


def list_index_owner_ids(db_path: str, module_id: str) -> List[str]:
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT DISTINCT owner_id FROM memory_index WHERE module_id = ? ORDER BY owner_id",
            (module_id,)
        )
        return [row[0] for row in cursor.fetchall()]


# ============= Memory relationships =============

RELATIONSHIP_COLUMNS = ("id, owner_id, source_module, source_memory_id, target_module, target_memory_id, "
                        "relationship_type, strength, metadata, created_at")


def row_to_relationship(row: sqlite3.Row) -> MemoryRelationship:
    return MemoryRelationship(
        id=row["id"],
        owner_id=row["owner_id"],
        source_module=row["source_module"],
        source_memory_id=row["source_memory_id"],
        target_module=row["target_module"],
        target_memory_id=row["target_memory_id"],
        relationship_type=row["relationship_type"],
        strength=row["strength"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=_parse_ts(row["created_at"]),
    )


def insert_relationship(db_path: str, relationship: MemoryRelationship) -> None:
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            f"INSERT INTO memory_relationships ({RELATIONSHIP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (relationship.id, relationship.owner_id, relationship.source_module, relationship.source_memory_id,
             relationship.target_module, relationship.target_memory_id, relationship.relationship_type,
             relationship.strength, json.dumps(relationship.metadata), _ts(relationship.created_at))
        )
        conn.commit()


def fetch_related(db_path: str, owner_id: str, module_id: str, memory_id: str,
                  relationship_types: Optional[List[str]] = None,
                  limit: int = 5) -> List[Tuple[MemoryRelationship, IndexEntry]]:
    """Relationships touching one record, paired with the index entry at the other end.

    Links whose other endpoint has no index entry are skipped. Strongest first.
    """
    sql = (f"SELECT {RELATIONSHIP_COLUMNS} FROM memory_relationships WHERE owner_id = ? AND ("
           "(source_module = ? AND source_memory_id = ?) OR (target_module = ? AND target_memory_id = ?))")
    params: List[Any] = [owner_id, module_id, memory_id, module_id, memory_id]
    if relationship_types:
        sql += f" AND relationship_type IN ({', '.join('?' for _ in relationship_types)})"
        params.extend(relationship_types)
    sql += " ORDER BY strength DESC, created_at, id"

    related = []
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(sql, params)
        relationships = [row_to_relationship(row) for row in cursor.fetchall()]

        for relationship in relationships:
            if relationship.source_module == module_id and relationship.source_memory_id == memory_id:
                other = (relationship.target_module, relationship.target_memory_id)
            else:
                other = (relationship.source_module, relationship.source_memory_id)
            cursor.execute(
                f"SELECT {INDEX_COLUMNS} FROM memory_index WHERE owner_id = ? AND module_id = ? AND remote_memory_id = ?",
                (owner_id, other[0], other[1])
            )
            row = cursor.fetchone()
            if row is None:
                continue
            related.append((relationship, row_to_index_entry(row)))
            if len(related) >= limit:
                break
    return related


def delete_relationships_for(db_path: str, owner_id: str, module_id: str, memory_id: str) -> int:
    """Remove every relationship with this record at either end."""
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "DELETE FROM memory_relationships WHERE owner_id = ? AND ("
            "(source_module = ? AND source_memory_id = ?) OR (target_module = ? AND target_memory_id = ?))",
            (owner_id, module_id, memory_id, module_id, memory_id)
        )
        conn.commit()
        return cursor.rowcount
