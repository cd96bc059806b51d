"""
Five-field cron expressions: minute hour day-of-month month day-of-week.

Each field is expanded to the set of values it accepts, and a time matches
when every one of its fields is a member of the corresponding set.
Day-of-week counts from Sunday = 0.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Optional

from appstarter.config import effective_settings as config

# (name, minimum, maximum) for each field, in expression order.
CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 6),
)


class CronParseError(ValueError):
    """Raised for a malformed cron expression or field."""


def _parse_int(token: str, minimum: int, maximum: int) -> int:
    if not (token.isascii() and token.isdigit()):
        raise CronParseError(f"'{token}' is not a number")
    value = int(token)
    if not minimum <= value <= maximum:
        raise CronParseError(f"{value} is outside the range {minimum}-{maximum}")
    return value


def parse_cron_field(field: str, minimum: int, maximum: int) -> FrozenSet[int]:
    """
    Expands one cron field into the set of values it accepts.

    Supported forms, combinable with commas: `*`, `n`, `a-b`, `a/step`,
    `*/step` and `a-b/step`. A step without a range runs from its start to
    the field maximum.

    :param field: The field text, e.g. "*/15" or "1-3,9".
    :param minimum: The smallest legal value for this field.
    :param maximum: The largest legal value for this field.
    :raises CronParseError: If any part is malformed or out of range.
    """
    values = set()
    for part in field.split(","):
        if not part:
            raise CronParseError(f"Empty list element in '{field}'")

        step = 1
        has_step = "/" in part
        if has_step:
            part, step_text = part.split("/", 1)
            if not (step_text.isascii() and step_text.isdigit()) or int(step_text) == 0:
                raise CronParseError(f"Invalid step '{step_text}' in '{field}'")
            step = int(step_text)

        if part == "*":
            start, end = minimum, maximum
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_int(start_text, minimum, maximum)
            end = _parse_int(end_text, minimum, maximum)
            if start > end:
                raise CronParseError(f"Range '{part}' runs backwards")
        else:
            start = _parse_int(part, minimum, maximum)
            end = maximum if has_step else start

        values.update(range(start, end + 1, step))
    return frozenset(values)


def cron_weekday(moment: datetime) -> int:
    """Day of week as cron numbers it: Sunday = 0 ... Saturday = 6."""
    return (moment.weekday() + 1) % 7


@dataclass(frozen=True)
class CronSchedule:
    """The parsed value sets of a five-field cron expression."""
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]
    expression: str = ""

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        """
        Parses "minute hour day-of-month month day-of-week".

        :raises CronParseError: If there are not exactly five fields or a field is invalid.
        """
        parts = expression.split()
        if len(parts) != len(CRON_FIELDS):
            raise CronParseError(
                "Cron expression must have 5 parts: minute hour dayOfMonth month dayOfWeek"
            )

        sets = []
        for text, (name, minimum, maximum) in zip(parts, CRON_FIELDS):
            try:
                sets.append(parse_cron_field(text, minimum, maximum))
            except CronParseError as e:
                raise CronParseError(f"Invalid {name} field '{text}': {e}") from e
        return cls(*sets, expression=" ".join(parts))

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days_of_month
            and moment.month in self.months
            and cron_weekday(moment) in self.days_of_week
        )

    def next_run_after(self, moment: datetime, limit_minutes: Optional[int] = None) -> Optional[datetime]:
        """
        Returns the first matching minute strictly after `moment`'s minute.

        Scans minute by minute up to `limit_minutes` ahead (one year by default).
        """
        limit_minutes = config.SCHEDULE_LOOKAHEAD_MINUTES if limit_minutes is None else limit_minutes
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(limit_minutes):
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return None
