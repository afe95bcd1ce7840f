"""
test_preferences.py - Tests for notification preference storage and validation.
"""

import dataclasses

import pytest

from finsync.errors import UnschedulableRule, ValidationError
from finsync.notify.models import NotificationPreferences, NotificationRule, NotificationType, QuietHours
from finsync.notify.preferences import load_preferences, save_preferences

QUIET_NIGHTS = QuietHours(enabled=True, start="22:00", end="08:00")


def with_monthly(cron, enabled=True, **overrides):
    return NotificationPreferences(
        monthly_checkin=NotificationRule(NotificationType.MONTHLY_CHECKIN, cron, enabled),
        **overrides,
    )


class TestLoad:
    def test_defaults_without_row(self, store):
        preferences = load_preferences(store)

        assert preferences.notifications_enabled
        assert preferences.monthly_checkin.cron == "0 9 2 * *"
        assert preferences.progress_update.cron == "0 10 * * 1"
        assert preferences.why_reminder.cron == "0 19 * * 1"
        assert not preferences.quiet_hours.enabled
        assert preferences.timezone == "UTC"


class TestSave:
    def test_round_trip(self, store, clock):
        preferences = NotificationPreferences(
            why_reminder=NotificationRule(NotificationType.WHY_REMINDER, "0 20 * * 5", enabled=False),
            quiet_hours=QUIET_NIGHTS,
            user_id="user-1",
        )

        saved = save_preferences(store, preferences)

        assert saved.why_reminder == preferences.why_reminder
        assert saved.quiet_hours == QUIET_NIGHTS
        assert saved.user_id == "user-1"
        assert saved.created_at == saved.updated_at == clock.value
        assert load_preferences(store) == saved

    def test_update_keeps_created_at(self, store, clock):
        first = save_preferences(store, NotificationPreferences())
        clock.advance(60)
        second = save_preferences(store, dataclasses.replace(first, notifications_enabled=False))

        assert not second.notifications_enabled
        assert second.created_at == first.created_at
        assert second.updated_at == clock.value

    def test_rule_inside_quiet_hours_rejected(self, store):
        before = load_preferences(store)
        with pytest.raises(UnschedulableRule) as info:
            save_preferences(store, with_monthly("30 23 * * *", quiet_hours=QUIET_NIGHTS))

        assert info.value.notification_type == "monthly_checkin"
        assert load_preferences(store) == before

    def test_impossible_date_rejected(self, store):
        with pytest.raises(UnschedulableRule):
            save_preferences(store, with_monthly("0 0 30 2 *"))

    def test_disabled_rule_skips_fire_check(self, store):
        saved = save_preferences(store, with_monthly("30 23 * * *", enabled=False, quiet_hours=QUIET_NIGHTS))
        assert not saved.monthly_checkin.enabled

    @pytest.mark.parametrize("preferences", [
        with_monthly("61 * * * *"),
        with_monthly("not a cron", enabled=False),
        NotificationPreferences(timezone="Mars/Olympus_Mons"),
        NotificationPreferences(quiet_hours=QuietHours(enabled=True, start="25:00", end="08:00")),
    ])
    def test_malformed_values_rejected(self, store, preferences):
        with pytest.raises(ValidationError):
            save_preferences(store, preferences)
