"""
migrations.py - Database initialization.

Creates the local tables and seeds metadata. Versioned migration
mechanics are outside this package; initialization only needs to be
idempotent so it can run on every start.
"""

import sqlite3

from finsync.config import SCHEMA_VERSION, STATE_KEY_SCHEMA_VERSION
from finsync.db.schema import ALL_SCHEMA_STATEMENTS
from finsync.errors import DatabaseError, FinSyncError


class SchemaVersionMismatch(FinSyncError):
    """The database was created by an incompatible schema version."""


def initialize_store(conn: sqlite3.Connection, now: int) -> None:
    """
    Create all tables and seed sync_state and notification_preferences.

    Safe to call repeatedly.

    Raises:
        DatabaseError: If schema creation fails
        SchemaVersionMismatch: If an existing database has another version
    """
    try:
        for statement in ALL_SCHEMA_STATEMENTS:
            for sql in statement.strip().split(";"):
                sql = sql.strip()
                if sql:
                    conn.execute(sql)
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to create tables: {e}",
            operation="create_tables",
        ) from e

    existing = get_schema_version(conn)
    if existing is not None and existing != SCHEMA_VERSION:
        raise SchemaVersionMismatch(
            "Schema version mismatch",
            context={"expected": SCHEMA_VERSION, "actual": existing},
        )

    try:
        conn.execute(
            "INSERT OR IGNORE INTO sync_state (key, value) VALUES (?, ?)",
            (STATE_KEY_SCHEMA_VERSION, SCHEMA_VERSION),
        )
        conn.execute(
            "INSERT OR IGNORE INTO notification_preferences (id, created_at, updated_at) VALUES (1, ?, ?)",
            (now, now),
        )
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to seed metadata: {e}",
            operation="init_metadata",
        ) from e


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    row = conn.execute(
        "SELECT value FROM sync_state WHERE key = ?",
        (STATE_KEY_SCHEMA_VERSION,),
    ).fetchone()
    return None if row is None else row[0]
