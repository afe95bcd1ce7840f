"""
store.py - Local record store.

The RecordStore owns the single SQLite connection of a device and the
lock that serializes every transaction on it. Reads exclude tombstoned
rows unless asked otherwise; writes take an explicit connection so they
can run inside a caller's transaction next to queue updates.
"""

import dataclasses
import logging
import sqlite3
import threading
from typing import Any, Callable, TypeVar

from finsync.config import (
    PARENT_REFERENCES,
    STATE_KEY_CURSOR_PREFIX,
    SYNC_TABLE_ORDER,
    SYNC_TABLES,
)
from finsync.db.connection import create_connection, execute_in_transaction
from finsync.db.migrations import initialize_store
from finsync.errors import RecordNotFound, ValidationError
from finsync.models import SyncableRecord, SyncCursor, record_from_dict
from finsync.utils.timeutil import Clock, now_micros

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _check_table(table_name: str) -> str:
    # Table names are interpolated into SQL, so only known tables pass
    if table_name not in SYNC_TABLES:
        raise ValidationError(
            f"Unknown syncable table: {table_name}",
            field="table_name",
            value=table_name,
        )
    return table_name


def row_to_record(table_name: str, row: sqlite3.Row) -> SyncableRecord:
    return record_from_dict(table_name, dict(row))


class RecordStore:
    """
    SQLite-backed store for syncable records and sync metadata.

    Example:
        >>> with RecordStore("app.db") as store:
        ...     store.initialize()
        ...     goals = store.list_records("savings_goals")
    """

    def __init__(self, db_path: str, clock: Clock = now_micros):
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self.clock = clock

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = create_connection(self._db_path)
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def initialize(self) -> None:
        """Create tables and seed metadata. Idempotent."""
        with self._lock:
            initialize_store(self.connection, self.clock())
        logger.info(f"Initialized local store at {self._db_path}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def now(self) -> int:
        return self.clock()

    def transaction(self, operation: Callable[[sqlite3.Connection], T], name: str = "transaction") -> T:
        """Run `operation` in one IMMEDIATE transaction under the store lock."""
        return execute_in_transaction(self.connection, operation, lock=self._lock, name=name)

    # Reads

    def get(self, table_name: str, record_id: str, include_deleted: bool = False) -> SyncableRecord | None:
        with self._lock:
            return self.get_in(self.connection, table_name, record_id, include_deleted)

    def get_in(
        self,
        conn: sqlite3.Connection,
        table_name: str,
        record_id: str,
        include_deleted: bool = False,
    ) -> SyncableRecord | None:
        """Read one record through `conn`, usually inside a transaction."""
        table = _check_table(table_name)
        sql = f"SELECT * FROM {table} WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = conn.execute(sql, (record_id,)).fetchone()
        return None if row is None else row_to_record(table, row)

    def require(self, conn: sqlite3.Connection, table_name: str, record_id: str) -> SyncableRecord:
        """
        Read a live record or raise.

        Raises:
            RecordNotFound: If the record is missing or tombstoned
        """
        record = self.get_in(conn, table_name, record_id)
        if record is None:
            raise RecordNotFound(table_name, record_id)
        return record

    def list_records(self, table_name: str, include_deleted: bool = False) -> list[SyncableRecord]:
        table = _check_table(table_name)
        sql = f"SELECT * FROM {table}"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        sql += " ORDER BY created_at ASC, id ASC"
        with self._lock:
            rows = self.connection.execute(sql).fetchall()
        return [row_to_record(table, row) for row in rows]

    def synced_at(self, table_name: str, record_id: str) -> int | None:
        table = _check_table(table_name)
        with self._lock:
            row = self.connection.execute(
                f"SELECT synced_at FROM {table} WHERE id = ?",
                (record_id,),
            ).fetchone()
        return None if row is None else row["synced_at"]

    def count(self, table_name: str, include_deleted: bool = False) -> int:
        table = _check_table(table_name)
        sql = f"SELECT COUNT(*) FROM {table}"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        with self._lock:
            return self.connection.execute(sql).fetchone()[0]

    # Writes (caller holds the transaction)

    def parent_is_live(self, conn: sqlite3.Connection, record: SyncableRecord, include_deleted: bool = False) -> bool:
        """Whether a child record's parent exists (and, by default, is not tombstoned)."""
        reference = PARENT_REFERENCES.get(record.TABLE)
        if reference is None:
            return True
        column, parent_table = reference
        parent_id = getattr(record, column)
        return self.get_in(conn, parent_table, parent_id, include_deleted) is not None

    def write_record(self, conn: sqlite3.Connection, record: SyncableRecord, insert_only: bool = False) -> None:
        """
        Insert or overwrite the row for `record`.

        `synced_at` is store-only and is left untouched on overwrite.

        Raises:
            sqlite3.IntegrityError: On constraint violations (insert_only
                with an existing id, missing foreign key parent)
        """
        table = _check_table(record.TABLE)
        values = dataclasses.asdict(record)
        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        if not insert_only:
            updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
            sql += f" ON CONFLICT(id) DO UPDATE SET {updates}"
        conn.execute(sql, [values[c] for c in columns])

    def mark_synced(self, conn: sqlite3.Connection, table_name: str, record_id: str, synced_at: int) -> None:
        table = _check_table(table_name)
        conn.execute(f"UPDATE {table} SET synced_at = ? WHERE id = ?", (synced_at, record_id))

    def purge_tombstones(self) -> dict[str, int]:
        """
        Hard-delete tombstones that no longer need to exist locally.

        A tombstone can go once the remote confirmed it (synced_at at or
        after deleted_at) or when the record never left the device (never
        synced and nothing queued). Children of purged parents go through
        ON DELETE CASCADE.

        Returns:
            Rows purged per table, counting only the tables' own tombstones
        """
        def _purge(conn: sqlite3.Connection) -> dict[str, int]:
            purged = {}
            # Children first so counts are not swallowed by cascades
            for table in reversed(SYNC_TABLE_ORDER):
                cursor = conn.execute(
                    f"""
                    DELETE FROM {table}
                    WHERE deleted_at IS NOT NULL
                      AND NOT EXISTS (
                          SELECT 1 FROM sync_queue q
                          WHERE q.table_name = ? AND q.record_id = {table}.id
                      )
                      AND (synced_at IS NULL OR synced_at >= deleted_at)
                    """,
                    (table,),
                )
                purged[table] = cursor.rowcount
            return purged

        purged = self.transaction(_purge, name="purge_tombstones")
        total = sum(purged.values())
        if total:
            logger.info(f"Purged {total} tombstoned rows")
        return purged

    # Pull cursor

    def load_cursor(self) -> SyncCursor:
        with self._lock:
            rows = self.connection.execute(
                "SELECT key, value FROM sync_state WHERE key LIKE ?",
                (f"{STATE_KEY_CURSOR_PREFIX}%",),
            ).fetchall()
        watermarks = {row["key"][len(STATE_KEY_CURSOR_PREFIX):]: row["value"] for row in rows}
        return SyncCursor(watermarks)

    def save_cursor(self, conn: sqlite3.Connection, cursor: SyncCursor) -> None:
        for table_name, value in cursor.watermarks.items():
            conn.execute(
                "INSERT INTO sync_state (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (f"{STATE_KEY_CURSOR_PREFIX}{table_name}", value),
            )

    def state(self) -> dict[str, Any]:
        with self._lock:
            rows = self.connection.execute("SELECT key, value FROM sync_state ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

