"""
Notification scheduling.

Cron rules plus quiet hours become concrete scheduled notifications in
the local store; a checker delivers them when due.
"""

from finsync.notify.cron import CronExpression, compute_next_fire, describe
from finsync.notify.delivery import LoggingDeliverer, NotificationChecker
from finsync.notify.models import (
    NotificationPreferences,
    NotificationRule,
    NotificationType,
    QuietHours,
    ScheduledNotification,
)
from finsync.notify.preferences import load_preferences, save_preferences
from finsync.notify.quiet_hours import defer_past_quiet_hours, is_quiet_hour
from finsync.notify.scheduler import (
    Deliverer,
    DispatchReport,
    NotificationScheduler,
    ScheduleReport,
)

__all__ = [
    "CronExpression",
    "compute_next_fire",
    "describe",
    "LoggingDeliverer",
    "NotificationChecker",
    "NotificationPreferences",
    "NotificationRule",
    "NotificationType",
    "QuietHours",
    "ScheduledNotification",
    "load_preferences",
    "save_preferences",
    "defer_past_quiet_hours",
    "is_quiet_hour",
    "Deliverer",
    "DispatchReport",
    "NotificationScheduler",
    "ScheduleReport",
]
