"""
change_capture.py - Capture of local mutations.

Every create, update and delete of a syncable record goes through
ChangeCapture. The row write and the queue upsert run in one IMMEDIATE
transaction, so no reader ever sees a mutation without its queue entry
or a queue entry without its mutation.

Deletes are soft: the row gets a deleted_at tombstone and stays in the
table until it is purged after sync.
"""

import dataclasses
import logging
import sqlite3
from typing import Any, Callable

from finsync.config import PARENT_REFERENCES
from finsync.errors import RecordNotFound, ValidationError
from finsync.identity import IdentityProvider, StaticIdentity
from finsync.log.sync_queue import enqueue
from finsync.models import META_FIELDS, Operation, SyncableRecord, record_type
from finsync.store import RecordStore
from finsync.utils.ids import new_id

logger = logging.getLogger(__name__)

MutationListener = Callable[[Operation, SyncableRecord], None]


class ChangeCapture:
    """
    Entry point for local writes on syncable tables.

    Args:
        store: The local record store
        identity: Reports the signed-in user; new records are stamped
            with it. Defaults to an anonymous identity.
    """

    def __init__(self, store: RecordStore, identity: IdentityProvider | None = None):
        self._store = store
        self._identity = identity if identity is not None else StaticIdentity()
        self._listeners: list[MutationListener] = []

    def add_listener(self, listener: MutationListener) -> None:
        """Register a callback run after each committed mutation."""
        self._listeners.append(listener)

    def create(self, table_name: str, values: dict[str, Any], record_id: str | None = None) -> SyncableRecord:
        """
        Insert a new record and queue it for sync.

        Args:
            table_name: Syncable table name
            values: User field values; sync metadata is set here
            record_id: Client id to use, generated when omitted

        Returns:
            The stored record

        Raises:
            ValidationError: Unknown table, bad field values, or id reuse
            RecordNotFound: A child record's parent is missing or deleted
            TransactionFailure: The write could not commit
        """
        cls = record_type(table_name)
        _check_fields(cls, values)
        now = self._store.now()
        record = cls(
            id=record_id or new_id(),
            user_id=self._identity.current_user_id(),
            created_at=now,
            updated_at=now,
            **values,
        )

        def _create(conn: sqlite3.Connection) -> SyncableRecord:
            if self._store.get_in(conn, table_name, record.id, include_deleted=True) is not None:
                raise ValidationError("Record id already exists", field="id", value=record.id)
            if not self._store.parent_is_live(conn, record):
                raise RecordNotFound(*_parent_of(record))
            self._store.write_record(conn, record, insert_only=True)
            enqueue(conn, Operation.CREATE, record, record.user_id, now)
            return record

        created = self._store.transaction(_create, name=f"create {table_name}")
        logger.debug(f"Created {table_name}/{created.id}")
        self._notify(Operation.CREATE, created)
        return created

    def update(self, table_name: str, record_id: str, changes: dict[str, Any]) -> SyncableRecord:
        """
        Apply field changes to a live record and queue them.

        updated_at becomes max(now, previous updated_at + 1) so it never
        goes backwards, even if the wall clock does.

        Raises:
            RecordNotFound: If the record is missing or tombstoned
            ValidationError: On metadata keys or invalid values
            TransactionFailure: The write could not commit
        """
        _check_fields(record_type(table_name), changes)

        def _update(conn: sqlite3.Connection) -> SyncableRecord:
            current = self._store.require(conn, table_name, record_id)
            updated = dataclasses.replace(
                current,
                updated_at=self._next_timestamp(current),
                **changes,
            )
            if not self._store.parent_is_live(conn, updated):
                raise RecordNotFound(*_parent_of(updated))
            self._store.write_record(conn, updated)
            enqueue(conn, Operation.UPDATE, updated, updated.user_id, self._store.now())
            return updated

        updated = self._store.transaction(_update, name=f"update {table_name}")
        logger.debug(f"Updated {table_name}/{record_id}")
        self._notify(Operation.UPDATE, updated)
        return updated

    def delete(self, table_name: str, record_id: str) -> SyncableRecord:
        """
        Tombstone a live record and queue the delete.

        Deleting a record whose create never reached the remote drops the
        queue entry instead of sending anything.

        Raises:
            RecordNotFound: If the record is missing or already deleted
            TransactionFailure: The write could not commit
        """
        record_type(table_name)

        def _delete(conn: sqlite3.Connection) -> SyncableRecord:
            current = self._store.require(conn, table_name, record_id)
            timestamp = self._next_timestamp(current)
            deleted = dataclasses.replace(current, updated_at=timestamp, deleted_at=timestamp)
            self._store.write_record(conn, deleted)
            enqueue(conn, Operation.DELETE, deleted, deleted.user_id, self._store.now())
            return deleted

        deleted = self._store.transaction(_delete, name=f"delete {table_name}")
        logger.debug(f"Deleted {table_name}/{record_id}")
        self._notify(Operation.DELETE, deleted)
        return deleted

    def _next_timestamp(self, current: SyncableRecord) -> int:
        return max(self._store.now(), current.updated_at + 1)

    def _notify(self, operation: Operation, record: SyncableRecord) -> None:
        for listener in self._listeners:
            try:
                listener(operation, record)
            except Exception as e:
                logger.warning(f"Mutation listener failed: {e}")


def _check_fields(cls: type[SyncableRecord], values: dict[str, Any]) -> None:
    for name in values:
        if name in META_FIELDS or name == "synced_at":
            raise ValidationError(
                f"{name} is managed by the sync layer",
                field=name,
                value=values[name],
            )
        if name not in cls.FIELD_SPECS:
            raise ValidationError(f"{cls.TABLE} has no field {name}", field=name)


def _parent_of(record: SyncableRecord) -> tuple[str, str]:
    column, parent_table = PARENT_REFERENCES[record.TABLE]
    return parent_table, getattr(record, column)
