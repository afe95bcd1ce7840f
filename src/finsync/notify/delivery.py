"""
delivery.py - Notification delivery and the periodic due-check.
"""

import asyncio
import logging
from typing import Callable

from finsync.errors import FinSyncError
from finsync.notify.models import ScheduledNotification
from finsync.notify.preferences import load_preferences
from finsync.notify.scheduler import Deliverer, DispatchReport, NotificationScheduler
from finsync.store import RecordStore
from finsync.utils.timeutil import Clock, format_micros, now_micros

logger = logging.getLogger(__name__)


class LoggingDeliverer:
    """Deliverer that writes notifications to the log and keeps them."""

    def __init__(self):
        self.delivered: list[ScheduledNotification] = []

    def deliver(self, notification: ScheduledNotification) -> bool:
        logger.info(
            f"[{notification.notification_type.value}] {notification.title}: {notification.body} "
            f"(scheduled {format_micros(notification.scheduled_at)})"
        )
        self.delivered.append(notification)
        return True


class NotificationChecker:
    """
    Periodically delivers due notifications and plans the next ones.

    Each check dispatches everything due, then reschedules all rules
    from the stored preferences so a sent instance is followed by the
    next one.

    Args:
        store: Local store
        deliverer: Where notifications go
        interval_seconds: Delay between checks
        clock: Source of the current time (Unix microseconds)
        on_dispatch: Called with the report of every check
    """

    def __init__(
        self,
        store: RecordStore,
        deliverer: Deliverer,
        interval_seconds: float = 60.0,
        clock: Clock = now_micros,
        on_dispatch: Callable[[DispatchReport], None] | None = None,
    ):
        self._store = store
        self._deliverer = deliverer
        self._interval = interval_seconds
        self._clock = clock
        self._on_dispatch = on_dispatch
        self._scheduler = NotificationScheduler(store)
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def scheduler(self) -> NotificationScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def check_once(self) -> DispatchReport:
        """Dispatch due notifications and reschedule. Runs synchronously."""
        now = self._clock()
        report = self._scheduler.dispatch_due(self._deliverer, now)
        if report.sent or report.failed:
            logger.info(f"Notification check: {len(report.sent)} sent, {len(report.failed)} failed")

        schedule = self._scheduler.schedule_all(load_preferences(self._store), now)
        for notification_type, error in schedule.errors.items():
            logger.warning(f"{notification_type.value} not scheduled: {error}")

        if self._on_dispatch:
            self._on_dispatch(report)
        return report

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Notification checker started (interval={self._interval}s)")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Notification checker stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_once()
            except FinSyncError as e:
                logger.error(f"Notification check failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
