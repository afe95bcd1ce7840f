"""
preferences.py - Load and save notification preferences.

Preferences live in the singleton notification_preferences row. Saving
validates every enabled rule by scheduling it against the quiet hours, so
a configuration that can never fire is rejected up front.
"""

import logging
import sqlite3
from datetime import datetime

from finsync.errors import UnschedulableRule
from finsync.notify.cron import CronExpression
from finsync.notify.models import NotificationPreferences
from finsync.notify.quiet_hours import next_allowed_fire, validate_quiet_hours
from finsync.store import RecordStore
from finsync.utils.timeutil import from_micros

logger = logging.getLogger(__name__)


def load_preferences(store: RecordStore) -> NotificationPreferences:
    """Read the preferences row, falling back to defaults if it is absent."""
    with store.lock:
        row = store.connection.execute(
            "SELECT * FROM notification_preferences WHERE id = 1"
        ).fetchone()
    if row is None:
        return NotificationPreferences()
    return NotificationPreferences.from_row(row)


def validate_preferences(preferences: NotificationPreferences, now: int) -> None:
    """
    Check that every enabled rule parses and can fire outside quiet hours.

    Raises:
        ValidationError: Bad cron text, HH:MM value or timezone
        UnschedulableRule: An enabled rule never produces a fire time
    """
    tz = preferences.tzinfo()
    validate_quiet_hours(preferences.quiet_hours)
    after = from_micros(now, tz)
    for rule in preferences.rules():
        expression = CronExpression.parse(rule.cron)
        if not rule.enabled:
            continue
        try:
            next_allowed_fire(expression, preferences.quiet_hours, after)
        except UnschedulableRule as e:
            raise UnschedulableRule(
                e.message,
                cron=rule.cron,
                notification_type=rule.notification_type.value,
            ) from e


def save_preferences(
    store: RecordStore,
    preferences: NotificationPreferences,
    now: int | None = None,
) -> NotificationPreferences:
    """
    Validate and persist preferences.

    Args:
        store: Local store holding the preferences row
        preferences: New preferences
        now: Reference time for validation, defaults to the store clock

    Returns:
        The saved preferences with updated timestamps

    Raises:
        ValidationError: On malformed values
        UnschedulableRule: If an enabled rule can never fire
    """
    now = store.now() if now is None else now
    validate_preferences(preferences, now)

    def _save(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            INSERT INTO notification_preferences (
                id, user_id, notifications_enabled,
                monthly_checkin_enabled, monthly_checkin_cron,
                progress_updates_enabled, progress_updates_cron,
                why_reminders_enabled, why_reminders_cron,
                quiet_hours_enabled, quiet_hours_start, quiet_hours_end,
                timezone, created_at, updated_at
            ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                notifications_enabled = excluded.notifications_enabled,
                monthly_checkin_enabled = excluded.monthly_checkin_enabled,
                monthly_checkin_cron = excluded.monthly_checkin_cron,
                progress_updates_enabled = excluded.progress_updates_enabled,
                progress_updates_cron = excluded.progress_updates_cron,
                why_reminders_enabled = excluded.why_reminders_enabled,
                why_reminders_cron = excluded.why_reminders_cron,
                quiet_hours_enabled = excluded.quiet_hours_enabled,
                quiet_hours_start = excluded.quiet_hours_start,
                quiet_hours_end = excluded.quiet_hours_end,
                timezone = excluded.timezone,
                updated_at = excluded.updated_at
            """,
            (
                preferences.user_id,
                int(preferences.notifications_enabled),
                int(preferences.monthly_checkin.enabled),
                preferences.monthly_checkin.cron,
                int(preferences.progress_update.enabled),
                preferences.progress_update.cron,
                int(preferences.why_reminder.enabled),
                preferences.why_reminder.cron,
                int(preferences.quiet_hours.enabled),
                preferences.quiet_hours.start,
                preferences.quiet_hours.end,
                preferences.timezone,
                preferences.created_at or now,
                now,
            ),
        )

    store.transaction(_save, name="save_preferences")
    logger.info("Saved notification preferences")
    return load_preferences(store)
