"""
models.py - Notification rules, preferences and scheduled instances.
"""

import sqlite3
from dataclasses import dataclass
from datetime import timezone, tzinfo
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from finsync.config import (
    DEFAULT_MONTHLY_CHECKIN_CRON,
    DEFAULT_PROGRESS_UPDATES_CRON,
    DEFAULT_QUIET_HOURS_END,
    DEFAULT_QUIET_HOURS_START,
    DEFAULT_TIMEZONE,
    DEFAULT_WHY_REMINDERS_CRON,
)
from finsync.errors import ValidationError


class NotificationType(str, Enum):
    MONTHLY_CHECKIN = "monthly_checkin"
    PROGRESS_UPDATE = "progress_update"
    WHY_REMINDER = "why_reminder"


@dataclass(frozen=True)
class NotificationRule:
    """Recurrence of one notification category."""
    notification_type: NotificationType
    cron: str
    enabled: bool = True


@dataclass(frozen=True)
class QuietHours:
    """
    Daily window [start, end) in which nothing fires.

    start > end wraps past midnight (22:00-08:00); start == end is an
    empty window.
    """
    enabled: bool = False
    start: str = DEFAULT_QUIET_HOURS_START
    end: str = DEFAULT_QUIET_HOURS_END


def resolve_timezone(name: str) -> tzinfo:
    """
    Map an IANA name to a tzinfo.

    Raises:
        ValidationError: If the zone is unknown
    """
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {name}", field="timezone", value=name) from e


@dataclass(frozen=True)
class NotificationPreferences:
    """The singleton notification_preferences row."""
    notifications_enabled: bool = True
    monthly_checkin: NotificationRule = NotificationRule(
        NotificationType.MONTHLY_CHECKIN, DEFAULT_MONTHLY_CHECKIN_CRON
    )
    progress_update: NotificationRule = NotificationRule(
        NotificationType.PROGRESS_UPDATE, DEFAULT_PROGRESS_UPDATES_CRON
    )
    why_reminder: NotificationRule = NotificationRule(
        NotificationType.WHY_REMINDER, DEFAULT_WHY_REMINDERS_CRON
    )
    quiet_hours: QuietHours = QuietHours()
    timezone: str = DEFAULT_TIMEZONE
    user_id: str | None = None
    created_at: int = 0
    updated_at: int = 0

    def rules(self) -> tuple[NotificationRule, ...]:
        return (self.monthly_checkin, self.progress_update, self.why_reminder)

    def tzinfo(self) -> tzinfo:
        return resolve_timezone(self.timezone)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "NotificationPreferences":
        return cls(
            notifications_enabled=bool(row["notifications_enabled"]),
            monthly_checkin=NotificationRule(
                NotificationType.MONTHLY_CHECKIN,
                row["monthly_checkin_cron"],
                bool(row["monthly_checkin_enabled"]),
            ),
            progress_update=NotificationRule(
                NotificationType.PROGRESS_UPDATE,
                row["progress_updates_cron"],
                bool(row["progress_updates_enabled"]),
            ),
            why_reminder=NotificationRule(
                NotificationType.WHY_REMINDER,
                row["why_reminders_cron"],
                bool(row["why_reminders_enabled"]),
            ),
            quiet_hours=QuietHours(
                bool(row["quiet_hours_enabled"]),
                row["quiet_hours_start"],
                row["quiet_hours_end"],
            ),
            timezone=row["timezone"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class ScheduledNotification:
    """
    A concrete planned notification.

    `scheduled_at` is UTC microseconds truncated to the minute. Cancelled
    instances carry deleted_at and are kept as history.
    """
    id: str
    notification_type: NotificationType
    title: str
    body: str
    scheduled_at: int
    goal_id: str | None = None
    cron_expression: str | None = None
    sent_at: int | None = None
    user_id: str | None = None
    created_at: int = 0
    updated_at: int = 0
    deleted_at: int | None = None

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None

    @property
    def is_cancelled(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ScheduledNotification":
        return cls(
            id=row["id"],
            notification_type=NotificationType(row["notification_type"]),
            title=row["title"],
            body=row["body"],
            scheduled_at=row["scheduled_at"],
            goal_id=row["goal_id"],
            cron_expression=row["cron_expression"],
            sent_at=row["sent_at"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )
