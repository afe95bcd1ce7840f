"""
sync_queue.py - Durable queue of pending outbound mutations.

Each row describes the latest unsynced state of one record. New local
mutations coalesce into the existing row for the same (table, record id)
instead of appending, so replay stays idempotent and the queue stays
bounded by the number of dirty records.

All functions take a connection and expect the caller to hold the
transaction.
"""

import dataclasses
import sqlite3
from typing import Iterable

from finsync.errors import ValidationError
from finsync.models import Operation, QueueEntry, QueueStatus, SyncableRecord
from finsync.utils.ids import new_id
from finsync.utils.msgpack_codec import pack_record, unpack_record

# Error messages are truncated before storage
MAX_ERROR_LENGTH = 500


def entry_from_row(row: sqlite3.Row) -> QueueEntry:
    """Create a QueueEntry from a sync_queue row."""
    return QueueEntry(
        id=row["id"],
        table_name=row["table_name"],
        record_id=row["record_id"],
        operation=Operation(row["operation"]),
        payload=unpack_record(row["table_name"], row["payload"]),
        user_id=row["user_id"],
        created_at=row["created_at"],
        attempts=row["attempts"],
        last_attempt_at=row["last_attempt_at"],
        error_message=row["error_message"],
        status=QueueStatus(row["status"]),
    )


def coalesce_operations(existing: QueueEntry, incoming: Operation) -> Operation | None:
    """
    Decide the operation of a coalesced entry.

    Returns None when the entry should be dropped: a record created and
    deleted before any push of it started needs no remote call at all.
    Once a push has started (last_attempt_at is set) the remote may hold
    the row even if no response arrived, so the delete is kept.
    """
    if incoming is Operation.CREATE:
        raise ValidationError(
            "Record already has a queued change; ids cannot be reused",
            field="record_id",
            value=existing.record_id,
        )
    if existing.operation is Operation.DELETE:
        raise ValidationError(
            "Record is already queued for deletion",
            field="record_id",
            value=existing.record_id,
        )
    if existing.operation is Operation.CREATE:
        if incoming is Operation.UPDATE:
            return Operation.CREATE
        if existing.attempts == 0 and existing.last_attempt_at is None:
            return None
        return Operation.DELETE
    return incoming


def get_entry(conn: sqlite3.Connection, table_name: str, record_id: str) -> QueueEntry | None:
    row = conn.execute(
        "SELECT * FROM sync_queue WHERE table_name = ? AND record_id = ?",
        (table_name, record_id),
    ).fetchone()
    return None if row is None else entry_from_row(row)


def get_entry_by_id(conn: sqlite3.Connection, entry_id: str) -> QueueEntry | None:
    row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
    return None if row is None else entry_from_row(row)


def enqueue(
    conn: sqlite3.Connection,
    operation: Operation,
    payload: SyncableRecord,
    user_id: str | None,
    now: int,
) -> QueueEntry | None:
    """
    Insert or coalesce the queue entry for `payload`'s record.

    Coalescing replaces the payload and keeps attempts and created_at, so
    the entry keeps its place in line. A failed entry touched by a new
    local edit goes back to pending.

    Returns:
        The resulting entry, or None if the entry was dropped
    """
    table_name = payload.TABLE
    existing = get_entry(conn, table_name, payload.id)
    blob = pack_record(payload)

    if existing is None:
        entry = QueueEntry(
            id=new_id(),
            table_name=table_name,
            record_id=payload.id,
            operation=operation,
            payload=payload,
            user_id=user_id,
            created_at=now,
        )
        conn.execute(
            """
            INSERT INTO sync_queue (
                id, table_name, record_id, operation, payload, payload_version,
                user_id, created_at, attempts, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 'pending')
            """,
            (
                entry.id, table_name, payload.id, operation.value, blob,
                payload.updated_at, user_id, now,
            ),
        )
        return entry

    merged_op = coalesce_operations(existing, operation)
    if merged_op is None:
        conn.execute("DELETE FROM sync_queue WHERE id = ?", (existing.id,))
        return None

    conn.execute(
        """
        UPDATE sync_queue
        SET operation = ?, payload = ?, payload_version = ?, status = 'pending'
        WHERE id = ?
        """,
        (merged_op.value, blob, payload.updated_at, existing.id),
    )
    return dataclasses.replace(
        existing, operation=merged_op, payload=payload, status=QueueStatus.PENDING
    )


def pending_entries(
    conn: sqlite3.Connection,
    limit: int,
    after: tuple[int, str] | None = None,
) -> list[QueueEntry]:
    """
    Pending entries in FIFO order (created_at, then id).

    `after` is the (created_at, id) of the last entry already handled in
    the current pass, for keyset pagination.
    """
    if after is None:
        rows = conn.execute(
            """
            SELECT * FROM sync_queue WHERE status = 'pending'
            ORDER BY created_at ASC, id ASC LIMIT ?
            """,
            (limit,),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT * FROM sync_queue
            WHERE status = 'pending' AND (created_at, id) > (?, ?)
            ORDER BY created_at ASC, id ASC LIMIT ?
            """,
            (after[0], after[1], limit),
        ).fetchall()
    return [entry_from_row(row) for row in rows]


def failed_entries(conn: sqlite3.Connection) -> list[QueueEntry]:
    rows = conn.execute(
        "SELECT * FROM sync_queue WHERE status = 'failed' ORDER BY created_at ASC, id ASC"
    ).fetchall()
    return [entry_from_row(row) for row in rows]


def delete_entry(conn: sqlite3.Connection, entry_id: str, payload_version: int | None = None) -> bool:
    """
    Remove an acknowledged entry.

    With `payload_version`, the row is only removed if no newer local
    mutation was coalesced into it in the meantime.
    """
    if payload_version is None:
        cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
    else:
        cursor = conn.execute(
            "DELETE FROM sync_queue WHERE id = ? AND payload_version = ?",
            (entry_id, payload_version),
        )
    return cursor.rowcount > 0


def discard_for_record(conn: sqlite3.Connection, table_name: str, record_id: str) -> bool:
    """Drop whatever is queued for a record whose local edit was superseded."""
    cursor = conn.execute(
        "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ?",
        (table_name, record_id),
    )
    return cursor.rowcount > 0


def mark_in_flight(conn: sqlite3.Connection, entry_id: str, now: int) -> None:
    """Note that a push of the entry is about to start. The mark is never cleared."""
    conn.execute("UPDATE sync_queue SET last_attempt_at = ? WHERE id = ?", (now, entry_id))


def record_failure(conn: sqlite3.Connection, entry_id: str, error: str, now: int) -> int:
    """
    Record a transient failure and return the new attempt count.
    """
    conn.execute(
        """
        UPDATE sync_queue
        SET attempts = attempts + 1, last_attempt_at = ?, error_message = ?
        WHERE id = ?
        """,
        (now, error[:MAX_ERROR_LENGTH], entry_id),
    )
    row = conn.execute("SELECT attempts FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
    return row["attempts"] if row else 0


def mark_failed(conn: sqlite3.Connection, entry_id: str, error: str, now: int) -> None:
    """Terminally fail an entry: kept, but excluded from automatic retries."""
    conn.execute(
        """
        UPDATE sync_queue
        SET status = 'failed', attempts = attempts + 1, last_attempt_at = ?, error_message = ?
        WHERE id = ?
        """,
        (now, error[:MAX_ERROR_LENGTH], entry_id),
    )


def requeue_failed(conn: sqlite3.Connection, entry_ids: Iterable[str] | None = None) -> int:
    """Move failed entries back to pending with a fresh retry budget."""
    if entry_ids is None:
        cursor = conn.execute(
            """
            UPDATE sync_queue
            SET status = 'pending', attempts = 0, error_message = NULL
            WHERE status = 'failed'
            """
        )
        return cursor.rowcount

    count = 0
    for entry_id in entry_ids:
        cursor = conn.execute(
            """
            UPDATE sync_queue
            SET status = 'pending', attempts = 0, error_message = NULL
            WHERE id = ? AND status = 'failed'
            """,
            (entry_id,),
        )
        count += cursor.rowcount
    return count


def discard_failed(conn: sqlite3.Connection, entry_ids: Iterable[str]) -> int:
    """Drop terminally failed entries the user gave up on."""
    count = 0
    for entry_id in entry_ids:
        count += conn.execute(
            "DELETE FROM sync_queue WHERE id = ? AND status = 'failed'",
            (entry_id,),
        ).rowcount
    return count


def count_by_status(conn: sqlite3.Connection) -> dict[str, int]:
    counts = {status.value: 0 for status in QueueStatus}
    for row in conn.execute("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"):
        counts[row["status"]] = row["n"]
    return counts


def clear_error(conn: sqlite3.Connection, entry_id: str) -> None:
    """Reset retry bookkeeping after a successful push of an older payload."""
    conn.execute(
        """
        UPDATE sync_queue
        SET attempts = 0, error_message = NULL
        WHERE id = ?
        """,
        (entry_id,),
    )
