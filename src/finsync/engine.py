"""
engine.py - Sync engine.

The SyncEngine reconciles the local store with the remote authority:

- drain(): push queued mutations in FIFO order with retry/backoff
- pull(): fetch remote changes per table and merge them by LWW
- sync(): pull, then drain
- dead-letter management for entries the remote rejected
- purge of tombstones that no longer need to be kept
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from finsync.config import SYNC_TABLE_ORDER, SyncConfig
from finsync.errors import (
    PermanentSyncFailure,
    SyncFailure,
    SyncStalled,
    TransientSyncFailure,
    ValidationError,
)
from finsync.log import sync_queue
from finsync.metrics import SyncLogger, queue_depth
from finsync.models import (
    Operation,
    QueueEntry,
    SyncableRecord,
    SyncCursor,
    record_from_dict,
    record_to_dict,
)
from finsync.resolution.lww_merge import remote_supersedes, resolve
from finsync.store import RecordStore
from finsync.transport.base import SERVER_STAMP_FIELD, PushResult, PushStatus, RemoteAuthority
from finsync.utils.timeutil import MICROS_PER_SECOND

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


@dataclass(frozen=True)
class FailedEntry:
    """A queue entry the remote rejected, with the rejection reason."""
    entry: QueueEntry
    error: str


@dataclass
class DrainResult:
    """
    Outcome of one drain pass.

    `deferred` is the entry whose backoff stopped the pass, if any.
    `skipped` is True when another pass was already running.
    """
    applied: int = 0
    conflicts: int = 0
    transient_failures: int = 0
    failed: list[FailedEntry] = field(default_factory=list)
    stalled: list[SyncStalled] = field(default_factory=list)
    deferred: QueueEntry | None = None
    skipped: bool = False
    cancelled: bool = False


@dataclass(frozen=True)
class PullResult:
    """Outcome of one pull; `cursor` is the watermark state after it."""
    cursor: SyncCursor
    applied: int = 0
    superseded: int = 0
    kept_local: int = 0
    rejected: int = 0
    counts: dict[str, int] = field(default_factory=dict)


@dataclass
class SyncReport:
    pull: PullResult | None = None
    drain: DrainResult | None = None
    pull_error: str | None = None


class SyncEngine:
    """
    Coordinates queue draining and pulling against one remote authority.

    Args:
        store: Local record store
        remote: Remote authority
        config: Batch size, backoff and stall settings
        on_stalled: Called with each SyncStalled raised during a drain

    Example:
        >>> engine = SyncEngine(store, HTTPRemote("https://api.example.com"))
        >>> report = asyncio.run(engine.sync())
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteAuthority,
        config: SyncConfig | None = None,
        on_stalled: Callable[[SyncStalled], None] | None = None,
    ):
        self._store = store
        self._remote = remote
        self._config = config if config is not None else SyncConfig()
        self._on_stalled = on_stalled
        self._drain_lock = threading.Lock()
        self._events = SyncLogger()

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def remote(self) -> RemoteAuthority:
        return self._remote

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    # =========================================================================
    # Drain
    # =========================================================================

    async def drain(
        self,
        batch_size: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DrainResult:
        """
        Push pending queue entries to the remote, oldest first.

        The pass stops at the first transient failure or at the first
        entry whose backoff has not elapsed, so later entries never
        overtake an earlier one. Permanently rejected entries are marked
        failed and the pass continues.

        Args:
            batch_size: Entries read per batch (defaults to config)
            cancel_event: Setting it stops the pass; the entry in flight
                is recorded as a transient failure

        Returns:
            DrainResult; skipped=True if a pass was already running

        Raises:
            TransactionFailure: If a local write fails
            asyncio.CancelledError: If the task is cancelled (the entry in
                flight is recorded first)
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress; trigger coalesced")
            return DrainResult(skipped=True)

        started = time.perf_counter()
        result = DrainResult()
        try:
            await self._drain_pass(batch_size or self._config.batch_size, cancel_event, result)
        finally:
            self._drain_lock.release()
            self._update_queue_gauge()

        self._events.drain_completed(
            result.applied, result.conflicts, len(result.failed), time.perf_counter() - started
        )
        return result

    async def _drain_pass(
        self,
        batch_size: int,
        cancel_event: asyncio.Event | None,
        result: DrainResult,
    ) -> None:
        after: tuple[int, str] | None = None
        while True:
            with self._store.lock:
                batch = sync_queue.pending_entries(self._store.connection, batch_size, after)
            if not batch:
                return

            for entry in batch:
                after = (entry.created_at, entry.id)
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    return

                if not self._backoff_elapsed(entry):
                    logger.debug(f"Backoff pending for {entry.table_name}/{entry.record_id}; pass stops")
                    result.deferred = entry
                    return

                if not await self._process_entry(entry, cancel_event, result):
                    return

    def _backoff_elapsed(self, entry: QueueEntry) -> bool:
        if entry.attempts == 0 or entry.last_attempt_at is None:
            return True
        delay = self._config.backoff_seconds(entry.attempts)
        return self._store.now() >= entry.last_attempt_at + int(delay * MICROS_PER_SECOND)

    async def _process_entry(
        self,
        entry: QueueEntry,
        cancel_event: asyncio.Event | None,
        result: DrainResult,
    ) -> bool:
        """Push one entry and apply the outcome. Returns False to stop the pass."""
        self._store.transaction(
            lambda conn: sync_queue.mark_in_flight(conn, entry.id, self._store.now()),
            name="mark_in_flight",
        )
        try:
            push = await self._push_cancellable(entry, cancel_event)
        except asyncio.CancelledError:
            self._record_transient(entry, CANCELLED_ERROR, result)
            raise
        except TransientSyncFailure as e:
            self._events.push_failed(entry.table_name, entry.record_id, entry.operation.value, str(e), permanent=False)
            self._record_transient(entry, str(e), result)
            return False
        except PermanentSyncFailure as e:
            self._events.push_failed(entry.table_name, entry.record_id, entry.operation.value, str(e), permanent=True)
            self._store.transaction(
                lambda conn: sync_queue.mark_failed(conn, entry.id, str(e), self._store.now()),
                name="mark_failed",
            )
            result.failed.append(FailedEntry(entry, str(e)))
            return True

        if push is None:
            self._record_transient(entry, CANCELLED_ERROR, result)
            result.cancelled = True
            return False

        try:
            remote_record = self._parse_remote(entry, push)
        except ValidationError as e:
            self._record_transient(entry, f"Malformed remote record: {e}", result)
            return False

        if push.status is PushStatus.APPLIED:
            self._apply_success(entry, remote_record)
            self._events.push_applied(entry.table_name, entry.record_id, entry.operation.value)
            result.applied += 1
            return True

        outcome = self._apply_conflict(entry, remote_record)
        if outcome == "superseded":
            result.conflicts += 1
        if outcome != "stale":
            return True
        self._record_transient(entry, "Conflict with an older remote version", result)
        return False

    async def _push_cancellable(
        self,
        entry: QueueEntry,
        cancel_event: asyncio.Event | None,
    ) -> PushResult | None:
        """Push, racing against cancel_event. Returns None if cancelled first."""
        push = self._remote.push(
            entry.table_name,
            entry.record_id,
            entry.operation,
            record_to_dict(entry.payload),
        )
        if cancel_event is None:
            return await push

        push_task = asyncio.ensure_future(push)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({push_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            push_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if push_task.done():
            return push_task.result()
        push_task.cancel()
        try:
            await push_task
        except asyncio.CancelledError:
            pass
        return None

    def _parse_remote(self, entry: QueueEntry, push: PushResult) -> SyncableRecord:
        if push.record is None:
            if push.status is PushStatus.CONFLICT:
                raise ValidationError("Conflict response without a record", field="record")
            return entry.payload
        try:
            return record_from_dict(entry.table_name, push.record)
        except TypeError as e:
            raise ValidationError(f"Incomplete record: {e}", field="record") from e

    def _record_transient(self, entry: QueueEntry, error: str, result: DrainResult) -> None:
        def _record(conn) -> int:
            now = self._store.now()
            attempts = sync_queue.record_failure(conn, entry.id, error, now)
            if attempts == 0:
                self._requeue_lost_delete(conn, entry, now)
            return attempts

        attempts = self._store.transaction(_record, name="record_failure")
        result.transient_failures += 1
        if attempts >= self._config.stall_attempts:
            stalled = SyncStalled(entry.table_name, entry.record_id, attempts, error)
            result.stalled.append(stalled)
            self._events.entry_stalled(entry.table_name, entry.record_id, attempts)
            if self._on_stalled is not None:
                self._on_stalled(stalled)

    def _requeue_lost_delete(self, conn, entry: QueueEntry, now: int) -> None:
        """
        Re-queue the delete of a tombstoned record whose entry vanished
        while its push was unanswered.
        """
        if sync_queue.get_entry(conn, entry.table_name, entry.record_id) is not None:
            return
        local = self._store.get_in(conn, entry.table_name, entry.record_id, include_deleted=True)
        if local is not None and local.is_deleted:
            logger.info(f"Re-queueing delete of {entry.table_name}/{entry.record_id} after an unanswered push")
            sync_queue.enqueue(conn, Operation.DELETE, local, local.user_id, now)

    def _apply_success(self, entry: QueueEntry, authoritative: SyncableRecord) -> None:
        def _apply(conn):
            self._settle(conn, entry, authoritative)
            if not sync_queue.delete_entry(conn, entry.id, entry.payload_version):
                # A newer local edit was coalesced during the flight
                sync_queue.clear_error(conn, entry.id)

        self._store.transaction(_apply, name="apply_push")

    def _apply_conflict(self, entry: QueueEntry, remote: SyncableRecord) -> str:
        """
        Resolve a conflict response.

        Returns:
            "superseded" if the remote version replaced the local edit,
            "requeued" if a newer local edit is waiting to be pushed,
            "stale" if the remote version is older than the queued payload
        """
        def _apply(conn) -> str:
            current = sync_queue.get_entry_by_id(conn, entry.id)
            if current is None:
                self._settle(conn, entry, remote)
                return "superseded"
            if remote_supersedes(current.payload, remote):
                self._settle(conn, entry, remote, force=True)
                sync_queue.discard_for_record(conn, entry.table_name, entry.record_id)
                return "superseded"
            if current.payload_version != entry.payload_version:
                return "requeued"
            return "stale"

        outcome = self._store.transaction(_apply, name="apply_conflict")
        if outcome == "superseded":
            self._events.conflict_resolved(entry.table_name, entry.record_id, "remote")
        return outcome

    def _settle(self, conn, entry: QueueEntry, authoritative: SyncableRecord, force: bool = False) -> None:
        """
        Merge the remote's version into the local row and stamp synced_at.

        Without `force` the local row is only overwritten when it loses by
        LWW. If the queue entry vanished during the flight because a local
        delete dropped a create the remote has now seen, the delete is
        queued again.
        """
        now = self._store.now()
        local = self._store.get_in(conn, entry.table_name, entry.record_id, include_deleted=True)
        if local is None or not self._store.parent_is_live(conn, authoritative, include_deleted=True):
            return
        if force or resolve(local, authoritative).remote_wins:
            if authoritative != local:
                self._store.write_record(conn, authoritative)
                local = authoritative
        self._store.mark_synced(conn, entry.table_name, entry.record_id, now)

        if (
            local.is_deleted
            and not authoritative.is_deleted
            and sync_queue.get_entry(conn, entry.table_name, entry.record_id) is None
        ):
            sync_queue.enqueue(conn, Operation.DELETE, local, local.user_id, now)

    # =========================================================================
    # Pull
    # =========================================================================

    async def pull(self, cursor: SyncCursor | None = None) -> PullResult:
        """
        Fetch remote changes and apply them by last-writer-wins.

        All tables are fetched first (in foreign-key order), then applied
        in one local transaction that also persists the advanced cursor.
        An interrupted pull applies nothing and re-fetches the same window.

        Args:
            cursor: Watermarks to pull from; the persisted cursor when omitted

        Returns:
            PullResult carrying the advanced cursor

        Raises:
            SyncFailure: If a fetch fails
            TransactionFailure: If applying fails
        """
        start_cursor = cursor if cursor is not None else self._store.load_cursor()
        fetched: list[tuple[str, list[dict]]] = []
        for table_name in SYNC_TABLE_ORDER:
            rows = await self._remote.pull(table_name, start_cursor.since(table_name))
            fetched.append((table_name, rows))

        def _apply(conn) -> PullResult:
            next_cursor = start_cursor
            stats = {"applied": 0, "superseded": 0, "kept_local": 0, "rejected": 0}
            counts = {}
            now = self._store.now()
            for table_name, rows in fetched:
                counts[table_name] = len(rows)
                for row in rows:
                    stats[self._apply_pulled(conn, table_name, row, now)] += 1
                    stamp = row.get(SERVER_STAMP_FIELD)
                    if isinstance(stamp, int):
                        next_cursor = next_cursor.advanced(table_name, stamp)
            self._store.save_cursor(conn, next_cursor)
            return PullResult(cursor=next_cursor, counts=counts, **stats)

        result = self._store.transaction(_apply, name="apply_pull")
        self._events.pull_completed(result.counts)
        return result

    def _apply_pulled(self, conn, table_name: str, row: dict, now: int) -> str:
        try:
            remote = record_from_dict(table_name, row)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Skipping invalid remote {table_name} record: {e}")
            return "rejected"

        if not self._store.parent_is_live(conn, remote, include_deleted=True):
            logger.warning(f"Skipping {table_name}/{remote.id}: parent not present locally")
            return "rejected"

        entry = sync_queue.get_entry(conn, table_name, remote.id)
        if entry is not None:
            if not remote_supersedes(entry.payload, remote):
                return "kept_local"
            self._store.write_record(conn, remote)
            self._store.mark_synced(conn, table_name, remote.id, now)
            sync_queue.discard_for_record(conn, table_name, remote.id)
            self._events.conflict_resolved(table_name, remote.id, "remote")
            return "superseded"

        local = self._store.get_in(conn, table_name, remote.id, include_deleted=True)
        resolution = resolve(local, remote)
        if not resolution.remote_wins:
            return "kept_local"
        if local != remote:
            self._store.write_record(conn, remote)
        self._store.mark_synced(conn, table_name, remote.id, now)
        return "applied"

    # =========================================================================
    # Full sync
    # =========================================================================

    async def sync(self, cancel_event: asyncio.Event | None = None) -> SyncReport:
        """Pull, then drain. A failed pull does not prevent the drain."""
        report = SyncReport()
        try:
            report.pull = await self.pull()
        except SyncFailure as e:
            logger.warning(f"Pull failed: {e}")
            report.pull_error = str(e)
        report.drain = await self.drain(cancel_event=cancel_event)
        return report

    # =========================================================================
    # Queue management
    # =========================================================================

    def pending_entries(self, limit: int = 1000) -> list[QueueEntry]:
        with self._store.lock:
            return sync_queue.pending_entries(self._store.connection, limit)

    def failed_entries(self) -> list[QueueEntry]:
        """Entries the remote rejected, awaiting manual resolution."""
        with self._store.lock:
            return sync_queue.failed_entries(self._store.connection)

    def retry_failed(self, entry_ids: list[str] | None = None) -> int:
        """Return failed entries (all when entry_ids is None) to the queue."""
        count = self._store.transaction(
            lambda conn: sync_queue.requeue_failed(conn, entry_ids),
            name="retry_failed",
        )
        logger.info(f"Requeued {count} failed entries")
        self._update_queue_gauge()
        return count

    def discard_failed(self, entry_ids: list[str]) -> int:
        """Drop failed entries; the local rows keep their unsynced state."""
        count = self._store.transaction(
            lambda conn: sync_queue.discard_failed(conn, entry_ids),
            name="discard_failed",
        )
        logger.info(f"Discarded {count} failed entries")
        self._update_queue_gauge()
        return count

    def purge_tombstones(self) -> dict[str, int]:
        return self._store.purge_tombstones()

    def queue_counts(self) -> dict[str, int]:
        with self._store.lock:
            return sync_queue.count_by_status(self._store.connection)

    def _update_queue_gauge(self) -> None:
        for status, count in self.queue_counts().items():
            queue_depth.set(count, status=status)
