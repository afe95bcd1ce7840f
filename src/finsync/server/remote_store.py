"""
remote_store.py - Authoritative record store of the reference server.

The remote keeps the same entity tables as a device and arbitrates every
push with record-level last-writer-wins:

- A push identical to the stored version is acknowledged again without
  writing, so retried network calls never duplicate a record.
- A stored version with updated_at at or after the pushed one wins and is
  returned as a conflict.
- Otherwise the pushed version is stored (creates and updates are upserts
  keyed on the client-generated id).

Every stored write also gets a server stamp (server_updated_at) that is
strictly increasing across the whole store. Pulls page on that stamp, not
on the device-supplied updated_at, so a record that was edited offline
long ago and pushed late still shows up for devices that already pulled
past its updated_at.

Rejected pushes raise ValidationError: unknown tables, malformed payloads,
operations that contradict the payload, and children whose parent is
missing or deleted.
"""

import logging
import sqlite3
import threading
from typing import Any

from finsync.config import SYNC_TABLE_ORDER
from finsync.errors import ValidationError
from finsync.models import Operation, SyncableRecord, record_from_dict, record_to_dict, record_type
from finsync.store import RecordStore, row_to_record
from finsync.transport.base import SERVER_STAMP_FIELD, PushResult, PushStatus
from finsync.utils.timeutil import Clock, now_micros

logger = logging.getLogger(__name__)

REMOTE_CHANGES_SCHEMA = """
CREATE TABLE IF NOT EXISTS remote_changes (
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    server_updated_at INTEGER NOT NULL,
    PRIMARY KEY (table_name, record_id)
) STRICT;
CREATE INDEX IF NOT EXISTS idx_remote_changes_stamp
    ON remote_changes(server_updated_at);
"""


def parse_payload(table_name: str, record_id: str, payload: dict[str, Any]) -> SyncableRecord:
    """
    Turn a wire payload into a typed record.

    Raises:
        ValidationError: Unknown table, missing or invalid fields, id mismatch
    """
    record_type(table_name)
    try:
        record = record_from_dict(table_name, payload)
    except TypeError as e:
        raise ValidationError(f"Malformed {table_name} payload: {e}", field="payload") from e
    if record.id != record_id:
        raise ValidationError("Payload id does not match record id", field="id", value=record.id)
    return record


class RemoteStore:
    """
    SQLite-backed remote authority state.

    Args:
        db_path: Database file, ":memory:" by default
        clock: Source of server stamps in epoch microseconds
    """

    def __init__(self, db_path: str = ":memory:", clock: Clock = now_micros):
        self._records = RecordStore(db_path, clock=clock)
        self._records.initialize()
        with self._records.lock:
            self._records.connection.executescript(REMOTE_CHANGES_SCHEMA)
        self._records.transaction(self._stamp_unstamped, name="remote stamp backfill")

    def _stamp_unstamped(self, conn: sqlite3.Connection) -> None:
        # Rows written before stamps existed keep their updated_at as stamp
        for table_name in SYNC_TABLE_ORDER:
            conn.execute(
                f"""
                INSERT OR IGNORE INTO remote_changes (table_name, record_id, server_updated_at)
                SELECT ?, id, updated_at FROM {table_name}
                """,
                (table_name,),
            )

    def close(self) -> None:
        self._records.close()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._records.connection

    @property
    def lock(self) -> threading.RLock:
        return self._records.lock

    def push(
        self,
        table_name: str,
        record_id: str,
        operation: Operation,
        payload: dict[str, Any],
    ) -> PushResult:
        """
        Apply one pushed mutation.

        Raises:
            ValidationError: If the mutation is rejected
        """
        record = parse_payload(table_name, record_id, payload)
        if (operation is Operation.DELETE) != record.is_deleted:
            raise ValidationError(
                f"{operation.value} does not match the payload's deleted_at",
                field="operation",
                value=operation.value,
            )

        def _push(conn: sqlite3.Connection) -> PushResult:
            existing = self._records.get_in(conn, table_name, record_id, include_deleted=True)
            if existing is not None:
                if existing == record:
                    return PushResult(PushStatus.APPLIED, record_to_dict(existing))
                if existing.updated_at >= record.updated_at:
                    return PushResult(PushStatus.CONFLICT, record_to_dict(existing))
            if record.is_deleted and not self._records.parent_is_live(conn, record, include_deleted=True):
                # Nothing to delete: neither the row nor its parent ever arrived
                return PushResult(PushStatus.APPLIED, record_to_dict(record))
            if not record.is_deleted and not self._records.parent_is_live(conn, record):
                raise ValidationError(
                    f"Parent of {table_name}/{record_id} is missing or deleted",
                    field="parent",
                )
            self._records.write_record(conn, record)
            self._stamp(conn, table_name, record_id)
            return PushResult(PushStatus.APPLIED, record_to_dict(record))

        result = self._records.transaction(_push, name=f"remote push {table_name}")
        logger.debug(f"Push {operation.value} {table_name}/{record_id}: {result.status.value}")
        return result

    def _stamp(self, conn: sqlite3.Connection, table_name: str, record_id: str) -> int:
        """Give a stored write the next server stamp (never equal to an earlier one)."""
        last = conn.execute("SELECT MAX(server_updated_at) FROM remote_changes").fetchone()[0]
        stamp = self._records.now()
        if last is not None and stamp <= last:
            stamp = last + 1
        conn.execute(
            """
            INSERT INTO remote_changes (table_name, record_id, server_updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(table_name, record_id) DO UPDATE SET
                server_updated_at = excluded.server_updated_at
            """,
            (table_name, record_id, stamp),
        )
        return stamp

    def pull(self, table_name: str, since: int) -> list[dict[str, Any]]:
        """
        Records stored after server stamp `since`, tombstones included.

        Rows come oldest stamp first and carry their stamp under
        SERVER_STAMP_FIELD; the caller's next `since` is the last one seen.
        """
        record_type(table_name)
        with self._records.lock:
            rows = self.connection.execute(
                f"""
                SELECT t.*, c.server_updated_at AS _stamp
                FROM {table_name} t
                JOIN remote_changes c ON c.table_name = ? AND c.record_id = t.id
                WHERE c.server_updated_at > ?
                ORDER BY c.server_updated_at ASC
                """,
                (table_name, since),
            ).fetchall()
        return [
            {**record_to_dict(row_to_record(table_name, row)), SERVER_STAMP_FIELD: row["_stamp"]}
            for row in rows
        ]

    def get(self, table_name: str, record_id: str) -> dict[str, Any] | None:
        record = self._records.get(table_name, record_id, include_deleted=True)
        return None if record is None else record_to_dict(record)

    def count(self, table_name: str, include_deleted: bool = True) -> int:
        return self._records.count(table_name, include_deleted=include_deleted)
