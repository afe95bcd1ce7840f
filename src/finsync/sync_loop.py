"""
sync_loop.py - Background sync loop.

Provides:
- Periodic sync on an interval
- Immediate sync when connectivity returns or a trigger arrives
- Cooperative cancellation of an in-flight drain when going offline
- Sync status tracking
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from finsync.engine import SyncEngine, SyncReport
from finsync.errors import FinSyncError
from finsync.models import Operation, SyncableRecord

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Current sync status."""
    IDLE = "idle"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class SyncStats:
    """Statistics for sync cycles."""
    last_sync_time: float = 0
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    entries_pushed: int = 0
    records_pulled: int = 0
    conflicts_resolved: int = 0


class SyncLoop:
    """
    Runs SyncEngine.sync() in the background.

    A cycle runs every `interval_seconds`, and early whenever trigger() is
    called or connectivity comes back. Going offline cancels the drain in
    progress; the entry in flight is recorded as a transient failure.

    Args:
        engine: Sync engine to drive
        interval_seconds: Delay between periodic cycles
        on_status_change: Called on every status change
        on_sync_complete: Called with the report of each completed cycle
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float | None = None,
        on_status_change: Callable[[SyncStatus], None] | None = None,
        on_sync_complete: Callable[[SyncReport], None] | None = None,
    ):
        self._engine = engine
        self._interval = interval_seconds if interval_seconds is not None else engine.config.interval_seconds
        self._on_status_change = on_status_change
        self._on_sync_complete = on_sync_complete

        self._status = SyncStatus.STOPPED
        self._stats = SyncStats()
        self._online = True
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake = asyncio.Event()
        self._cancel_event = asyncio.Event()

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def stats(self) -> SyncStats:
        return self._stats

    @property
    def online(self) -> bool:
        return self._online

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        if self._online:
            self._cancel_event.clear()
        self._set_status(SyncStatus.IDLE if self._online else SyncStatus.OFFLINE)
        self._task = asyncio.create_task(self._run())
        logger.info("Sync loop started")

    async def stop(self) -> None:
        """Stop the loop, cancelling a cycle in progress."""
        if self._task is not None:
            self._cancel_event.set()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_status(SyncStatus.STOPPED)
        logger.info("Sync loop stopped")

    def trigger(self) -> None:
        """Request a cycle as soon as possible. Safe from any thread."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wake.set)

    def on_mutation(self, operation: Operation, record: SyncableRecord) -> None:
        """ChangeCapture listener: push local edits promptly."""
        self.trigger()

    def notify_connectivity(self, online: bool) -> None:
        """
        Report a connectivity change. Safe from any thread.

        Going offline stops the drain in progress; coming back online
        starts a cycle right away.
        """
        if self._loop is None or self._loop.is_closed():
            self._online = online
            return
        self._loop.call_soon_threadsafe(self._apply_connectivity, online)

    def _apply_connectivity(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if not online:
            self._cancel_event.set()
            self._set_status(SyncStatus.OFFLINE)
            logger.info("Connectivity lost; sync paused")
        elif not was_online:
            self._cancel_event.clear()
            self._set_status(SyncStatus.IDLE)
            logger.info("Connectivity regained; syncing")
            self._wake.set()

    async def sync_now(self) -> SyncReport | None:
        """Run one cycle immediately. Returns None when offline or failed."""
        return await self._do_sync()

    async def _run(self) -> None:
        while True:
            if self._online:
                await self._do_sync()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def _do_sync(self) -> SyncReport | None:
        if not self._online:
            return None
        self._set_status(SyncStatus.SYNCING)
        self._stats.total_syncs += 1
        try:
            report = await self._engine.sync(cancel_event=self._cancel_event)
        except FinSyncError as e:
            logger.error(f"Sync failed: {e}")
            self._stats.failed_syncs += 1
            self._set_status(SyncStatus.ERROR)
            return None

        self._record(report)
        if self._online:
            self._set_status(SyncStatus.IDLE)
        if self._on_sync_complete:
            self._on_sync_complete(report)
        return report

    def _record(self, report: SyncReport) -> None:
        self._stats.last_sync_time = time.time()
        if report.pull_error is None:
            self._stats.successful_syncs += 1
        else:
            self._stats.failed_syncs += 1
        if report.pull is not None:
            self._stats.records_pulled += sum(report.pull.counts.values())
            self._stats.conflicts_resolved += report.pull.superseded
        if report.drain is not None:
            self._stats.entries_pushed += report.drain.applied
            self._stats.conflicts_resolved += report.drain.conflicts

    def _set_status(self, status: SyncStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self._on_status_change:
            self._on_status_change(status)
