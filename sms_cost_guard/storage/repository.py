"""
Repository pattern for the persistence boundary.

Stores one opaque cache record per scope. Records are always replaced
whole, never partially updated.
"""

from datetime import datetime
from typing import Dict, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection


class RecordStore(Protocol):
    """Durable key-value store holding one serialized record per scope."""

    def read(self, scope: str) -> Optional[str]:
        ...

    def write(self, scope: str, record: str) -> None:
        ...

    def delete(self, scope: str) -> None:
        ...


class InMemoryRecordStore:
    """Process-local record store, mainly for tests and one-off runs."""

    def __init__(self, records: Optional[Dict[str, str]] = None):
        self.records: Dict[str, str] = dict(records or {})

    def read(self, scope: str) -> Optional[str]:
        return self.records.get(scope)

    def write(self, scope: str, record: str) -> None:
        self.records[scope] = record

    def delete(self, scope: str) -> None:
        self.records.pop(scope, None)


class SqliteRecordStore:
    """SQLite-backed record store.

    Each scope (user or session) owns exactly one row. Writes use
    INSERT OR REPLACE inside a transaction so readers never observe a torn
    record.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, create_schema: bool = True):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            create_schema: Create the record table if it is missing
        """
        self.db_path = db_path
        if create_schema:
            initialize_schema(db_path)

    def read(self, scope: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT record FROM segment_cache_record WHERE scope = ?",
                (scope,)
            )
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def write(self, scope: str, record: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("""
                INSERT OR REPLACE INTO segment_cache_record (scope, record, updated_at)
                VALUES (?, ?, ?)
            """, (scope, record, datetime.now().isoformat()))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete(self, scope: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM segment_cache_record WHERE scope = ?", (scope,))
            conn.commit()
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the segment_cache_record table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS segment_cache_record (
                scope TEXT PRIMARY KEY,
                record TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()
