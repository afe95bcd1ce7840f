"""
quiet_hours.py - Quiet-hour windows.

A window covers [start, end) in local wall-clock time. It wraps past
midnight when start > end; start == end is an empty window.
"""

from datetime import datetime, time, timedelta

from finsync.config import MAX_QUIET_HOUR_ADJUSTMENTS
from finsync.errors import UnschedulableRule, ValidationError
from finsync.notify.cron import CronExpression
from finsync.notify.models import QuietHours


def parse_hhmm(text: str) -> time:
    """
    Parse "HH:MM" (24-hour).

    Raises:
        ValidationError: If the text is not a valid time of day
    """
    hours, sep, minutes = text.strip().partition(":")
    if (
        not sep
        or not (hours.isdigit() and minutes.isdigit())
        or len(minutes) != 2
        or int(hours) > 23
        or int(minutes) > 59
    ):
        raise ValidationError("Time must be HH:MM", field="quiet_hours", value=text)
    return time(int(hours), int(minutes))


def validate_quiet_hours(quiet_hours: QuietHours) -> None:
    parse_hhmm(quiet_hours.start)
    parse_hhmm(quiet_hours.end)


def is_quiet_hour(moment: datetime, quiet_hours: QuietHours) -> bool:
    """Whether `moment` (local wall clock) falls inside the window."""
    if not quiet_hours.enabled:
        return False
    start = parse_hhmm(quiet_hours.start)
    end = parse_hhmm(quiet_hours.end)
    if start == end:
        return False
    current = moment.time().replace(tzinfo=None)
    if start < end:
        return start <= current < end
    return current >= start or current < end


def defer_past_quiet_hours(moment: datetime, quiet_hours: QuietHours) -> datetime:
    """
    Move `moment` to the end of the quiet window containing it.

    Times outside the window come back unchanged.
    """
    if not is_quiet_hour(moment, quiet_hours):
        return moment
    start = parse_hhmm(quiet_hours.start)
    end = parse_hhmm(quiet_hours.end)
    deferred = moment.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    # In a wrapping window the evening part ends on the next day
    if start > end and moment.time().replace(tzinfo=None) >= start:
        deferred += timedelta(days=1)
    return deferred


def next_allowed_fire(expression: CronExpression, quiet_hours: QuietHours, after: datetime) -> datetime:
    """
    Next fire time of `expression` after `after` that is outside quiet hours.

    A fire time inside the window is pushed to the window's end; if the
    cron no longer matches there, the search continues from that point.

    Raises:
        UnschedulableRule: If no allowed time is found within a bounded
            number of adjustments
    """
    candidate = expression.next_after(after)
    for _ in range(MAX_QUIET_HOUR_ADJUSTMENTS):
        if not is_quiet_hour(candidate, quiet_hours):
            return candidate
        deferred = defer_past_quiet_hours(candidate, quiet_hours)
        if expression.matches(deferred):
            return deferred
        candidate = expression.next_after(deferred)

    raise UnschedulableRule(
        f"Every fire time falls inside quiet hours {quiet_hours.start}-{quiet_hours.end}",
        cron=expression.source,
    )
