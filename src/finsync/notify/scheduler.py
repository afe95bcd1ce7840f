"""
scheduler.py - Notification scheduling.

Turns notification rules into concrete ScheduledNotification rows:
- Next fire time from the rule's cron, deferred past quiet hours
- Idempotent per (type, goal, minute); stale future instances cancelled
- Title and body built from the user's savings goals
- Due-notification lookup and delivery bookkeeping
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Protocol

from finsync.errors import UnschedulableRule, ValidationError
from finsync.metrics import SyncLogger
from finsync.notify.cron import CronExpression
from finsync.notify.models import (
    NotificationPreferences,
    NotificationRule,
    NotificationType,
    QuietHours,
    ScheduledNotification,
    resolve_timezone,
)
from finsync.notify.quiet_hours import next_allowed_fire
from finsync.store import RecordStore
from finsync.utils.ids import new_id
from finsync.utils.timeutil import from_micros, to_micros, truncate_to_minute

logger = logging.getLogger(__name__)

MONTHLY_CHECKIN_TITLE = "Monthly Savings Check-in"
MONTHLY_CHECKIN_BODY = "Time to record your savings for last month! How did you do?"
PROGRESS_UPDATE_TITLE = "Savings Progress Update"


class Deliverer(Protocol):
    """Sends a notification to the user. Returns True when delivered."""

    def deliver(self, notification: ScheduledNotification) -> bool:
        ...


@dataclass(frozen=True)
class GoalProgress:
    goal_id: str
    name: str
    target_amount: float
    saved: float
    why_statement: str | None

    @property
    def percentage(self) -> float:
        if self.target_amount <= 0:
            return 0.0
        return self.saved / self.target_amount * 100


@dataclass
class ScheduleReport:
    """Outcome of schedule_all: one entry per rule at most."""
    scheduled: list[ScheduledNotification] = field(default_factory=list)
    cancelled: int = 0
    errors: dict[NotificationType, str] = field(default_factory=dict)


@dataclass
class DispatchReport:
    sent: list[ScheduledNotification] = field(default_factory=list)
    failed: list[ScheduledNotification] = field(default_factory=list)


def progress_message(goal: GoalProgress, goal_count: int) -> str:
    """Body of a progress update, pitched to how far along the goal is."""
    percentage = round(goal.percentage)
    context = f" ({goal_count} goals total)" if goal_count > 1 else ""
    name = goal.name

    if percentage >= 100:
        return f'Congratulations! You\'ve reached your goal "{name}"!{context}'
    if percentage >= 75:
        return f'Amazing! You\'re {percentage}% toward "{name}". Almost there!{context}'
    if percentage >= 50:
        return f'Halfway there! You\'re {percentage}% toward "{name}". Keep going!{context}'
    if percentage >= 25:
        return f'Great progress! You\'re {percentage}% toward "{name}".{context}'
    if percentage > 0:
        return f'You\'re {percentage}% toward your goal "{name}". Every step counts!{context}'
    return f'Ready to start saving toward "{name}"? Your journey begins with one step.{context}'


class NotificationScheduler:
    """
    Plans and tracks notifications in the local store.

    Args:
        store: Local store holding goals and scheduled_notifications
        timezone: Default IANA zone for cron evaluation when schedule()
            is called without preferences
    """

    def __init__(self, store: RecordStore, timezone: str = "UTC"):
        self._store = store
        self._tz = resolve_timezone(timezone)
        self._events = SyncLogger("finsync.notify")

    def schedule(
        self,
        rule: NotificationRule,
        quiet_hours: QuietHours,
        now: int,
        goal_id: str | None = None,
        title: str | None = None,
        body: str | None = None,
        tz: tzinfo | None = None,
    ) -> ScheduledNotification | None:
        """
        Schedule the next instance of `rule`.

        Scheduling the same rule again for the same minute returns the
        existing row. Unsent future instances of the same type at other
        times, or for another goal, are cancelled.

        Args:
            rule: Rule to schedule; disabled rules schedule nothing
            quiet_hours: Window to keep clear
            now: Current time, Unix microseconds
            goal_id: Goal the notification is about, if any
            title: Title; defaults to the monthly check-in text
            body: Body; defaults to the monthly check-in text
            tz: Zone the cron is evaluated in

        Returns:
            The scheduled notification, or None for a disabled rule

        Raises:
            ValidationError: If the cron does not parse
            UnschedulableRule: If no allowed fire time exists
        """
        if not rule.enabled:
            return None

        expression = CronExpression.parse(rule.cron)
        after = from_micros(now, tz or self._tz)
        try:
            fire = next_allowed_fire(expression, quiet_hours, after)
        except UnschedulableRule as e:
            raise UnschedulableRule(
                e.message,
                cron=rule.cron,
                notification_type=rule.notification_type.value,
            ) from e

        scheduled_at = truncate_to_minute(to_micros(fire))
        notification_type = rule.notification_type.value

        def _schedule(conn: sqlite3.Connection) -> tuple[ScheduledNotification, int, bool]:
            cancelled = conn.execute(
                """
                UPDATE scheduled_notifications
                SET deleted_at = ?, updated_at = ?
                WHERE notification_type = ?
                  AND sent_at IS NULL AND deleted_at IS NULL
                  AND scheduled_at > ?
                  AND NOT (scheduled_at = ? AND COALESCE(goal_id, '') = COALESCE(?, ''))
                """,
                (now, now, notification_type, now, scheduled_at, goal_id),
            ).rowcount

            row = conn.execute(
                """
                SELECT * FROM scheduled_notifications
                WHERE notification_type = ?
                  AND COALESCE(goal_id, '') = COALESCE(?, '')
                  AND scheduled_at = ?
                  AND sent_at IS NULL AND deleted_at IS NULL
                """,
                (notification_type, goal_id, scheduled_at),
            ).fetchone()
            if row is not None:
                return ScheduledNotification.from_row(row), cancelled, False

            notification = ScheduledNotification(
                id=new_id(),
                notification_type=rule.notification_type,
                title=title if title is not None else MONTHLY_CHECKIN_TITLE,
                body=body if body is not None else MONTHLY_CHECKIN_BODY,
                scheduled_at=scheduled_at,
                goal_id=goal_id,
                cron_expression=rule.cron,
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                """
                INSERT INTO scheduled_notifications (
                    id, user_id, notification_type, goal_id, title, body,
                    scheduled_at, cron_expression, sent_at, created_at, updated_at, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, NULL)
                """,
                (
                    notification.id,
                    notification.user_id,
                    notification_type,
                    goal_id,
                    notification.title,
                    notification.body,
                    scheduled_at,
                    rule.cron,
                    now,
                    now,
                ),
            )
            return notification, cancelled, True

        notification, cancelled, created = self._store.transaction(
            _schedule, name=f"schedule {notification_type}"
        )
        if cancelled:
            logger.info(f"Cancelled {cancelled} superseded {notification_type} notifications")
        if created:
            self._events.notification_event(notification_type, "scheduled", notification.id)
        return notification

    def cancel_type(self, notification_type: NotificationType, now: int) -> int:
        """Cancel unsent future instances of one type. Returns the count."""
        def _cancel(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE scheduled_notifications
                SET deleted_at = ?, updated_at = ?
                WHERE notification_type = ?
                  AND sent_at IS NULL AND deleted_at IS NULL
                  AND scheduled_at > ?
                """,
                (now, now, notification_type.value, now),
            ).rowcount

        cancelled = self._store.transaction(_cancel, name=f"cancel {notification_type.value}")
        if cancelled:
            self._events.notification_event(notification_type.value, "cancelled")
        return cancelled

    def schedule_all(self, preferences: NotificationPreferences, now: int) -> ScheduleReport:
        """
        Bring scheduled notifications in line with `preferences`.

        Each rule is handled on its own: a rule that fails validation is
        reported in `errors` and the others still get scheduled.
        """
        report = ScheduleReport()
        try:
            tz = preferences.tzinfo()
        except ValidationError as e:
            for rule in preferences.rules():
                report.errors[rule.notification_type] = str(e)
            return report

        for rule in preferences.rules():
            notification_type = rule.notification_type
            if not (preferences.notifications_enabled and rule.enabled):
                report.cancelled += self.cancel_type(notification_type, now)
                continue

            content = self._content_for(notification_type, now, tz)
            if content is None:
                logger.debug(f"No goals to build a {notification_type.value} notification from")
                report.cancelled += self.cancel_type(notification_type, now)
                continue

            goal_id, title, body = content
            try:
                notification = self.schedule(
                    rule,
                    preferences.quiet_hours,
                    now,
                    goal_id=goal_id,
                    title=title,
                    body=body,
                    tz=tz,
                )
            except (UnschedulableRule, ValidationError) as e:
                logger.error(f"Could not schedule {notification_type.value}: {e}")
                report.errors[notification_type] = str(e)
                continue
            if notification is not None:
                report.scheduled.append(notification)

        return report

    def due_notifications(self, now: int) -> list[ScheduledNotification]:
        """Unsent, uncancelled notifications with scheduled_at <= now, oldest first."""
        with self._store.lock:
            rows = self._store.connection.execute(
                """
                SELECT * FROM scheduled_notifications
                WHERE sent_at IS NULL AND deleted_at IS NULL AND scheduled_at <= ?
                ORDER BY scheduled_at ASC, created_at ASC
                """,
                (now,),
            ).fetchall()
        return [ScheduledNotification.from_row(row) for row in rows]

    def upcoming(self, now: int, limit: int = 20) -> list[ScheduledNotification]:
        with self._store.lock:
            rows = self._store.connection.execute(
                """
                SELECT * FROM scheduled_notifications
                WHERE sent_at IS NULL AND deleted_at IS NULL AND scheduled_at > ?
                ORDER BY scheduled_at ASC
                LIMIT ?
                """,
                (now, limit),
            ).fetchall()
        return [ScheduledNotification.from_row(row) for row in rows]

    def history(self, limit: int = 50) -> list[ScheduledNotification]:
        """Most recent notifications of any state, newest first."""
        with self._store.lock:
            rows = self._store.connection.execute(
                "SELECT * FROM scheduled_notifications ORDER BY scheduled_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [ScheduledNotification.from_row(row) for row in rows]

    def mark_sent(self, notification_id: str, sent_at: int) -> bool:
        """
        Record delivery. Returns False if the notification was already
        sent, cancelled or does not exist.
        """
        def _mark(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE scheduled_notifications
                SET sent_at = ?, updated_at = ?
                WHERE id = ? AND sent_at IS NULL AND deleted_at IS NULL
                """,
                (sent_at, sent_at, notification_id),
            ).rowcount

        return self._store.transaction(_mark, name="mark_sent") == 1

    def dispatch_due(self, deliverer: Deliverer, now: int) -> DispatchReport:
        """
        Deliver every due notification.

        Only notifications the deliverer reports as delivered are marked
        sent; the rest stay due and are retried on the next check.
        """
        report = DispatchReport()
        for notification in self.due_notifications(now):
            notification_type = notification.notification_type.value
            try:
                delivered = deliverer.deliver(notification)
            except Exception as e:
                logger.warning(f"Delivery of {notification.id} raised: {e}")
                delivered = False

            if delivered and self.mark_sent(notification.id, now):
                report.sent.append(notification)
                self._events.notification_event(notification_type, "sent", notification.id)
            else:
                report.failed.append(notification)
                self._events.notification_event(notification_type, "failed", notification.id)
        return report

    # Content

    def goal_progress(self) -> list[GoalProgress]:
        """Live savings goals with the sum of their live contributions."""
        with self._store.lock:
            rows = self._store.connection.execute(
                """
                SELECT g.id, g.name, g.target_amount, g.why_statement,
                       COALESCE(SUM(c.amount), 0) AS saved
                FROM savings_goals g
                LEFT JOIN savings_contributions c
                  ON c.goal_id = g.id AND c.deleted_at IS NULL
                WHERE g.deleted_at IS NULL
                GROUP BY g.id
                ORDER BY g.created_at ASC, g.id ASC
                """
            ).fetchall()
        return [
            GoalProgress(
                goal_id=row["id"],
                name=row["name"],
                target_amount=row["target_amount"],
                saved=row["saved"],
                why_statement=row["why_statement"],
            )
            for row in rows
        ]

    def _content_for(
        self, notification_type: NotificationType, now: int, tz: tzinfo
    ) -> tuple[str | None, str, str] | None:
        if notification_type is NotificationType.MONTHLY_CHECKIN:
            return None, MONTHLY_CHECKIN_TITLE, MONTHLY_CHECKIN_BODY

        goals = self.goal_progress()
        if notification_type is NotificationType.PROGRESS_UPDATE:
            if not goals:
                return None
            top = goals[0]
            for goal in goals[1:]:
                if goal.percentage > top.percentage:
                    top = goal
            return top.goal_id, PROGRESS_UPDATE_TITLE, progress_message(top, len(goals))

        with_why = [goal for goal in goals if goal.why_statement and goal.why_statement.strip()]
        if not with_why:
            return None
        day_of_year = from_micros(now, tz).timetuple().tm_yday
        goal = with_why[day_of_year % len(with_why)]
        return goal.goal_id, f"Remember: {goal.name}", f'"{goal.why_statement}"'
