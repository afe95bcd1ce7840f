"""
cron.py - Five-field cron expressions.

Fields are minute, hour, day of month, month and day of week. Each field
accepts `*`, numbers, lists, ranges and steps; months and weekdays also
accept three-letter names. Day of week runs 0-7 with both 0 and 7 meaning
Sunday.

When both day fields are restricted a day matches if EITHER matches, as
in Vixie cron. A field starting with `*` (including `*/n`) counts as
unrestricted.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from finsync.config import CRON_SEARCH_YEARS
from finsync.errors import UnschedulableRule, ValidationError
from finsync.notify.models import NotificationRule

MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
WEEKDAY_NAMES = {
    name: index
    for index, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}
WEEKDAY_LABELS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

# (name, minimum, maximum, names)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day_of_month", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("day_of_week", 0, 7, WEEKDAY_NAMES),
)


def _invalid(expression: str, reason: str) -> ValidationError:
    return ValidationError(f"Invalid cron expression: {reason}", field="cron", value=expression)


def _parse_value(token: str, names: dict[str, int], expression: str) -> int:
    lowered = token.lower()
    if lowered in names:
        return names[lowered]
    if not token.isdigit():
        raise _invalid(expression, f"bad value {token!r}")
    return int(token)


def _parse_field(text: str, minimum: int, maximum: int, names: dict[str, int], expression: str) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise _invalid(expression, "empty list item")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise _invalid(expression, f"bad step {step_text!r}")
            step = int(step_text)

        if base == "*":
            low, high = minimum, maximum
        elif "-" in base:
            first, _, last = base.partition("-")
            low = _parse_value(first, names, expression)
            high = _parse_value(last, names, expression)
        else:
            low = _parse_value(base, names, expression)
            # "5/15" means every 15 starting at 5
            high = maximum if step_text else low

        if low < minimum or high > maximum or low > high:
            raise _invalid(expression, f"{part!r} is outside {minimum}-{maximum}")
        values.update(range(low, high + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A parsed cron expression. Weekdays are stored 0-6, Sunday first."""
    source: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        """
        Parse a five-field expression.

        Raises:
            ValidationError: On a wrong field count or out-of-range values
        """
        parts = expression.split()
        if len(parts) != 5:
            raise _invalid(expression, f"expected 5 fields, got {len(parts)}")

        parsed = [
            _parse_field(text, minimum, maximum, names, expression)
            for text, (_, minimum, maximum, names) in zip(parts, _FIELDS)
        ]
        minutes, hours, days, months, weekdays = parsed
        return cls(
            source=expression,
            minutes=minutes,
            hours=hours,
            days_of_month=days,
            months=months,
            days_of_week=frozenset(day % 7 for day in weekdays),
            dom_restricted=not parts[2].startswith("*"),
            dow_restricted=not parts[4].startswith("*"),
        )

    def matches_day(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days_of_month
        # date.weekday() is Monday=0; cron is Sunday=0
        dow_ok = (day.weekday() + 1) % 7 in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        if self.dom_restricted:
            return dom_ok
        if self.dow_restricted:
            return dow_ok
        return True

    def matches(self, moment: datetime) -> bool:
        """Whether the wall-clock minute of `moment` is a fire time."""
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and self.matches_day(moment.date())
        )

    def next_after(self, after: datetime) -> datetime:
        """
        Earliest matching minute strictly after `after`.

        Works on wall-clock fields and keeps the tzinfo of `after`.

        Raises:
            UnschedulableRule: If nothing matches within the search window
        """
        start = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        day = start.date()
        limit = day + timedelta(days=366 * CRON_SEARCH_YEARS)
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)

        while day <= limit:
            if day.month not in self.months:
                # Jump to the first of the next month
                day = (day.replace(day=1) + timedelta(days=32)).replace(day=1)
                continue
            if self.matches_day(day):
                for hour in hours:
                    for minute in minutes:
                        candidate = datetime.combine(day, time(hour, minute), tzinfo=after.tzinfo)
                        if candidate >= start:
                            return candidate
            day += timedelta(days=1)

        raise UnschedulableRule(
            f"No fire time within {CRON_SEARCH_YEARS} years",
            cron=self.source,
        )


def _as_expression(rule_or_cron: NotificationRule | CronExpression | str) -> CronExpression:
    if isinstance(rule_or_cron, CronExpression):
        return rule_or_cron
    if isinstance(rule_or_cron, NotificationRule):
        return CronExpression.parse(rule_or_cron.cron)
    return CronExpression.parse(rule_or_cron)


def compute_next_fire(rule_or_cron: NotificationRule | CronExpression | str, after: datetime) -> datetime:
    """
    Next fire time of a rule or expression strictly after `after`.

    Args:
        rule_or_cron: A NotificationRule, a parsed expression or cron text
        after: Reference time; the result keeps its tzinfo

    Returns:
        The earliest matching minute after `after`

    Raises:
        ValidationError: If the expression does not parse
        UnschedulableRule: If it never fires within the search window
    """
    expression = _as_expression(rule_or_cron)
    try:
        return expression.next_after(after)
    except UnschedulableRule as e:
        if isinstance(rule_or_cron, NotificationRule):
            raise UnschedulableRule(
                e.message,
                cron=expression.source,
                notification_type=rule_or_cron.notification_type.value,
            ) from e
        raise


def is_valid_cron(expression: str) -> bool:
    try:
        CronExpression.parse(expression)
    except ValidationError:
        return False
    return True


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def describe(expression: str) -> str:
    """Short human description of the common shapes; falls back to the text."""
    parts = expression.split()
    if len(parts) != 5 or not (parts[0].isdigit() and parts[1].isdigit()):
        return expression
    minute, hour, dom, _, dow = parts
    at = f"{int(hour):02d}:{int(minute):02d}"

    if "/" in dom:
        return f"Every few days at {at}"
    if dom != "*":
        if dom.isdigit():
            return f"{_ordinal(int(dom))} of each month at {at}"
        return expression
    if dow != "*":
        if dow.isdigit() and int(dow) <= 7:
            return f"{WEEKDAY_LABELS[int(dow) % 7]}s at {at}"
        return expression
    return f"Daily at {at}"


def _split_hhmm(at: str) -> tuple[int, int]:
    hours, _, minutes = at.partition(":")
    if not (hours.isdigit() and minutes.isdigit()) or int(hours) > 23 or int(minutes) > 59:
        raise ValidationError("Time must be HH:MM", field="time", value=at)
    return int(hours), int(minutes)


def daily_at(at: str) -> str:
    hours, minutes = _split_hhmm(at)
    return f"{minutes} {hours} * * *"


def monthly_on_day(day: int, at: str) -> str:
    if not 1 <= day <= 31:
        raise ValidationError("Day of month must be 1-31", field="day", value=day)
    hours, minutes = _split_hhmm(at)
    return f"{minutes} {hours} {day} * *"


def weekly_on(weekday: int, at: str) -> str:
    """Weekly on `weekday` (0 or 7 Sunday, 1 Monday, ...)."""
    if not 0 <= weekday <= 7:
        raise ValidationError("Day of week must be 0-7", field="weekday", value=weekday)
    hours, minutes = _split_hhmm(at)
    return f"{minutes} {hours} * * {weekday}"


def every_n_days(days: int, at: str) -> str:
    """Every `days` days of the month, restarting on the 1st."""
    if days < 1:
        raise ValidationError("Interval must be at least one day", field="days", value=days)
    hours, minutes = _split_hhmm(at)
    return f"{minutes} {hours} */{days} * *"
