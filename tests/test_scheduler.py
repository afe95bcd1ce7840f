"""
test_scheduler.py - Tests for notification scheduling and delivery.
"""

import dataclasses
from datetime import datetime, timezone

import pytest

from conftest import goal_values
from finsync.errors import UnschedulableRule, ValidationError
from finsync.notify.delivery import LoggingDeliverer, NotificationChecker
from finsync.notify.models import (
    NotificationPreferences,
    NotificationRule,
    NotificationType,
    QuietHours,
    resolve_timezone,
)
from finsync.notify.scheduler import (
    MONTHLY_CHECKIN_BODY,
    MONTHLY_CHECKIN_TITLE,
    GoalProgress,
    NotificationScheduler,
    progress_message,
)
from finsync.utils.timeutil import to_micros

MONTHLY = NotificationRule(NotificationType.MONTHLY_CHECKIN, "0 9 2 * *")
PROGRESS = NotificationRule(NotificationType.PROGRESS_UPDATE, "0 10 * * 1")
NO_QUIET = QuietHours()


def micros(*args):
    return to_micros(datetime(*args, tzinfo=timezone.utc))


@pytest.fixture
def scheduler(store):
    return NotificationScheduler(store)


class FlakyDeliverer:
    def __init__(self, refuse=(), explode=()):
        self.refuse = set(refuse)
        self.explode = set(explode)
        self.seen = []

    def deliver(self, notification):
        self.seen.append(notification.id)
        if notification.id in self.explode:
            raise RuntimeError("push service down")
        return notification.id not in self.refuse


class TestSchedule:
    def test_schedules_next_fire(self, scheduler, clock):
        notification = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)

        assert notification.scheduled_at == micros(2024, 3, 2, 9, 0)
        assert notification.title == MONTHLY_CHECKIN_TITLE
        assert notification.body == MONTHLY_CHECKIN_BODY
        assert notification.cron_expression == "0 9 2 * *"
        assert not notification.is_sent

    def test_idempotent_per_minute(self, scheduler, clock):
        first = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)
        clock.advance(60)
        second = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)

        assert second.id == first.id
        assert len(scheduler.history()) == 1

    def test_changed_rule_cancels_stale_instance(self, scheduler, clock):
        old = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)
        moved = dataclasses.replace(MONTHLY, cron="0 9 3 * *")
        new = scheduler.schedule(moved, NO_QUIET, clock.value)

        assert new.id != old.id
        states = {n.id: n.is_cancelled for n in scheduler.history()}
        assert states == {old.id: True, new.id: False}

    def test_disabled_rule_schedules_nothing(self, scheduler, clock):
        disabled = dataclasses.replace(MONTHLY, enabled=False)
        assert scheduler.schedule(disabled, NO_QUIET, clock.value) is None
        assert scheduler.history() == []

    def test_quiet_hours_defer(self, scheduler, clock):
        rule = NotificationRule(NotificationType.MONTHLY_CHECKIN, "*/30 * * * *")
        quiet = QuietHours(enabled=True, start="00:00", end="08:00")
        notification = scheduler.schedule(rule, quiet, clock.value)
        assert notification.scheduled_at == micros(2024, 3, 1, 8, 0)

    def test_rule_inside_quiet_hours_unschedulable(self, scheduler, clock):
        rule = NotificationRule(NotificationType.WHY_REMINDER, "30 23 * * *")
        quiet = QuietHours(enabled=True, start="22:00", end="08:00")
        with pytest.raises(UnschedulableRule) as info:
            scheduler.schedule(rule, quiet, clock.value)
        assert info.value.notification_type == "why_reminder"

    def test_impossible_rule_unschedulable(self, scheduler, clock):
        rule = NotificationRule(NotificationType.MONTHLY_CHECKIN, "0 0 30 2 *")
        with pytest.raises(UnschedulableRule):
            scheduler.schedule(rule, NO_QUIET, clock.value)


class TestDue:
    def test_due_in_ascending_order(self, scheduler, clock):
        monthly = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)
        hourly = scheduler.schedule(
            NotificationRule(NotificationType.PROGRESS_UPDATE, "0 * * * *"), NO_QUIET, clock.value
        )

        assert scheduler.due_notifications(micros(2024, 3, 1, 0, 30)) == []
        due = scheduler.due_notifications(micros(2024, 3, 3))
        assert [n.id for n in due] == [hourly.id, monthly.id]

    def test_mark_sent_once(self, scheduler, clock):
        notification = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)
        sent_at = micros(2024, 3, 2, 9, 0)

        assert scheduler.mark_sent(notification.id, sent_at)
        assert not scheduler.mark_sent(notification.id, sent_at)
        assert scheduler.due_notifications(micros(2024, 3, 3)) == []

    def test_dispatch_marks_only_successes(self, scheduler, clock):
        monthly = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)
        progress = scheduler.schedule(PROGRESS, NO_QUIET, clock.value, title="t", body="b")
        now = micros(2024, 3, 5)

        deliverer = FlakyDeliverer(refuse={monthly.id})
        report = scheduler.dispatch_due(deliverer, now)

        assert [n.id for n in report.sent] == [progress.id]
        assert [n.id for n in report.failed] == [monthly.id]
        assert [n.id for n in scheduler.due_notifications(now)] == [monthly.id]

    def test_deliverer_exception_counts_as_failure(self, scheduler, clock):
        monthly = scheduler.schedule(MONTHLY, NO_QUIET, clock.value)
        report = scheduler.dispatch_due(FlakyDeliverer(explode={monthly.id}), micros(2024, 3, 5))

        assert report.sent == []
        assert len(report.failed) == 1
        assert scheduler.due_notifications(micros(2024, 3, 5))[0].id == monthly.id


class TestScheduleAll:
    def test_without_goals_only_monthly(self, scheduler, clock):
        report = scheduler.schedule_all(NotificationPreferences(), clock.value)

        assert [n.notification_type for n in report.scheduled] == [NotificationType.MONTHLY_CHECKIN]
        assert report.errors == {}

    def test_goal_based_content(self, scheduler, capture, clock):
        emergency = capture.create("savings_goals", goal_values(name="Emergency fund", target_amount=1000.0))
        clock.advance(1)
        vacation = capture.create(
            "savings_goals",
            goal_values(name="Vacation", target_amount=200.0, why_statement="See the sea"),
        )
        capture.create("savings_contributions", {"goal_id": emergency.id, "month": "2024-02", "amount": 300.0})
        capture.create("savings_contributions", {"goal_id": vacation.id, "month": "2024-02", "amount": 150.0})

        report = scheduler.schedule_all(NotificationPreferences(), clock.value)
        by_type = {n.notification_type: n for n in report.scheduled}

        progress = by_type[NotificationType.PROGRESS_UPDATE]
        assert progress.goal_id == vacation.id
        assert progress.title == "Savings Progress Update"
        assert progress.body == 'Amazing! You\'re 75% toward "Vacation". Almost there! (2 goals total)'
        assert progress.scheduled_at == micros(2024, 3, 4, 10, 0)

        # 2024-03-01 is day 61 of the year; 61 % 2 picks the second goal
        why = by_type[NotificationType.WHY_REMINDER]
        assert why.goal_id == vacation.id
        assert why.title == "Remember: Vacation"
        assert why.body == '"See the sea"'
        assert why.scheduled_at == micros(2024, 3, 4, 19, 0)

    def test_deleted_contributions_ignored(self, scheduler, capture, clock):
        goal = capture.create("savings_goals", goal_values(target_amount=100.0))
        contribution = capture.create(
            "savings_contributions", {"goal_id": goal.id, "month": "2024-02", "amount": 60.0}
        )
        capture.delete("savings_contributions", contribution.id)

        assert scheduler.goal_progress()[0].saved == 0

    def test_master_switch_cancels(self, scheduler, clock):
        scheduler.schedule_all(NotificationPreferences(), clock.value)
        report = scheduler.schedule_all(
            NotificationPreferences(notifications_enabled=False), clock.value
        )

        assert report.scheduled == []
        assert report.cancelled == 1
        assert all(n.is_cancelled for n in scheduler.history())

    def test_rule_errors_are_isolated(self, scheduler, capture, clock):
        capture.create("savings_goals", goal_values())
        preferences = NotificationPreferences(
            monthly_checkin=NotificationRule(NotificationType.MONTHLY_CHECKIN, "0 0 30 2 *"),
        )

        report = scheduler.schedule_all(preferences, clock.value)

        assert set(report.errors) == {NotificationType.MONTHLY_CHECKIN}
        assert {n.notification_type for n in report.scheduled} == {
            NotificationType.PROGRESS_UPDATE,
            NotificationType.WHY_REMINDER,
        }


class TestProgressMessage:
    @pytest.mark.parametrize("saved, expected", [
        (100.0, 'Congratulations! You\'ve reached your goal "Car"!'),
        (80.0, 'Amazing! You\'re 80% toward "Car". Almost there!'),
        (50.0, 'Halfway there! You\'re 50% toward "Car". Keep going!'),
        (30.0, 'Great progress! You\'re 30% toward "Car".'),
        (5.0, 'You\'re 5% toward your goal "Car". Every step counts!'),
        (0.0, 'Ready to start saving toward "Car"? Your journey begins with one step.'),
    ])
    def test_thresholds(self, saved, expected):
        goal = GoalProgress("g", "Car", 100.0, saved, None)
        assert progress_message(goal, 1) == expected


class TestChecker:
    def test_check_once_delivers_and_reschedules(self, store, clock):
        deliverer = LoggingDeliverer()
        checker = NotificationChecker(store, deliverer, clock=clock)

        checker.check_once()
        assert deliverer.delivered == []
        first = checker.scheduler.upcoming(clock.value)[0]

        clock.value = micros(2024, 3, 2, 9, 0)
        report = checker.check_once()

        assert [n.id for n in report.sent] == [first.id]
        upcoming = checker.scheduler.upcoming(clock.value)
        assert upcoming[0].scheduled_at == micros(2024, 4, 2, 9, 0)


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        resolve_timezone("Not/AZone")
