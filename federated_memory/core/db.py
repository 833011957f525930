"""
SQLite persistence: connections and table creation for module tables,
the central memory index and the embedding cache.
"""

import re
import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import ensure_db_directory

TABLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


def validate_table_name(table: str) -> str:
    """Table names are interpolated into SQL, so only plain identifiers are accepted."""
    if not TABLE_NAME_PATTERN.match(table or ""):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


@contextmanager
def get_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str):
    """Initialize the database with the shared tables."""
    ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")

        # Central memory index, one row per (owner, module, record)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS memory_index (
                owner_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                remote_memory_id TEXT NOT NULL,
                compact_embedding TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                summary TEXT NOT NULL DEFAULT '',
                keywords TEXT NOT NULL DEFAULT '[]',
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, module_id, remote_memory_id)
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_memory_index_owner_module ON memory_index(owner_id, module_id)')

        # Links between indexed records, removed with either endpoint
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS memory_relationships (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                source_module TEXT NOT NULL,
                source_memory_id TEXT NOT NULL,
                target_module TEXT NOT NULL,
                target_memory_id TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                strength REAL NOT NULL DEFAULT 0.5,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_relationships_source ON memory_relationships(owner_id, source_module, source_memory_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_relationships_target ON memory_relationships(owner_id, target_module, target_memory_id)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS embedding_cache (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        ''')

        conn.commit()


def ensure_memory_table(db_path: str, table: str):
    """Create a module's memory table if it does not exist yet."""
    table = validate_table_name(table)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(f'''
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{{}}',
                embedding TEXT,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')
        cursor.execute(f'CREATE INDEX IF NOT EXISTS idx_{table}_owner_updated ON {table}(owner_id, updated_at DESC)')
        conn.commit()


def health_check(db_path: str, tables=None) -> bool:
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = {row[0] for row in cursor.fetchall()}

            required_tables = ['memory_index', 'memory_relationships', 'embedding_cache'] + list(tables or [])
            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
