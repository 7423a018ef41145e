"""
Schedule parsing and occurrence math.

Two cadence kinds are supported:
- Fixed intervals: "5m", "1h", "every 2h", "1d", or a bare number of minutes
- Cron expressions: five fields "minute hour day-of-month month day-of-week"

Cron occurrences are computed in the agent's timezone and returned in UTC.
All functions here are pure; callers supply every timestamp.
"""

import re
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.errors import ScheduleUnparseableError

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440

# Four years plus a day covers every leap-day expression
DEFAULT_SEARCH_HORIZON_DAYS = 4 * 366 + 1

_INTERVAL_RE = re.compile(
    r"^(?:every\s+)?(\d+)\s*"
    r"(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)?$",
    re.IGNORECASE,
)

_UNIT_MINUTES = {
    "m": 1, "min": 1, "mins": 1, "minute": 1, "minutes": 1,
    "h": MINUTES_PER_HOUR, "hr": MINUTES_PER_HOUR, "hrs": MINUTES_PER_HOUR,
    "hour": MINUTES_PER_HOUR, "hours": MINUTES_PER_HOUR,
    "d": MINUTES_PER_DAY, "day": MINUTES_PER_DAY, "days": MINUTES_PER_DAY,
}

_MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun",
         "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}

_WEEKDAY_NAMES = {
    name: index
    for index, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}


def resolve_timezone(name: str) -> tzinfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is not a known zone
    """
    if not isinstance(name, str) or not name.strip():
        raise ValueError("timezone name is empty")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        # Region prefixes such as "America" resolve to a tzdata directory
        raise ValueError(f"unknown timezone '{name}'") from e


@dataclass(frozen=True)
class IntervalSchedule:
    """Fixed cadence measured from the previous run"""

    minutes: int

    kind = "interval"

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.minutes)

    @property
    def text(self) -> str:
        if self.minutes % MINUTES_PER_DAY == 0:
            return f"{self.minutes // MINUTES_PER_DAY}d"
        if self.minutes % MINUTES_PER_HOUR == 0:
            return f"{self.minutes // MINUTES_PER_HOUR}h"
        return f"{self.minutes}m"

    def fires_within(self, start: datetime, days: int, tz: tzinfo = UTC) -> bool:
        return self.minutes <= days * MINUTES_PER_DAY


@dataclass(frozen=True)
class CronSchedule:
    """Five-field cron expression with classic day-of-month/day-of-week OR rule"""

    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_restricted: bool
    dow_restricted: bool
    text: str

    kind = "cron"

    def _day_matches(self, day) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days_of_month
        # isoweekday: Monday=1..Sunday=7, cron: Sunday=0
        dow_ok = (day.isoweekday() % 7) in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        if self.dom_restricted:
            return dom_ok
        if self.dow_restricted:
            return dow_ok
        return True

    def next_at_or_after(
        self,
        moment: datetime,
        tz: tzinfo = UTC,
        horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS,
    ) -> Optional[datetime]:
        """
        First occurrence at or after ``moment``.

        Returns None when nothing matches within ``horizon_days``.
        """
        local = moment.astimezone(tz).replace(tzinfo=None)
        start = local.replace(second=0, microsecond=0)
        if start < local:
            start += timedelta(minutes=1)

        for offset in range(horizon_days + 1):
            day = start.date() + timedelta(days=offset)
            if not self._day_matches(day):
                continue
            for hour in self.hours:
                if offset == 0 and hour < start.hour:
                    continue
                for minute in self.minutes:
                    if offset == 0 and hour == start.hour and minute < start.minute:
                        continue
                    candidate = datetime.combine(day, time(hour, minute)).replace(tzinfo=tz)
                    result = candidate.astimezone(UTC)
                    if result >= moment:
                        return result
        return None

    def next_after(
        self,
        moment: datetime,
        tz: tzinfo = UTC,
        horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS,
    ) -> Optional[datetime]:
        """First occurrence strictly after ``moment``"""
        return self.next_at_or_after(moment + timedelta(microseconds=1), tz, horizon_days)

    def fires_within(self, start: datetime, days: int, tz: tzinfo = UTC) -> bool:
        return self.next_at_or_after(start, tz, horizon_days=days) is not None


Schedule = Union[IntervalSchedule, CronSchedule]


def _parse_value(token: str, names: dict[str, int]) -> int:
    lowered = token.lower()
    if lowered in names:
        return names[lowered]
    if not token.isdigit():
        raise ValueError(f"invalid value '{token}'")
    return int(token)


def _parse_field(
    field: str,
    low: int,
    high: int,
    names: Optional[dict[str, int]] = None,
) -> frozenset[int]:
    names = names or {}
    values: set[int] = set()

    for part in field.split(","):
        if not part:
            raise ValueError(f"empty list item in '{field}'")

        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid step '{step_text}'")
            step = int(step_text)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_value(start_text, names)
            end = _parse_value(end_text, names)
        else:
            start = _parse_value(part, names)
            # "5/15" means "from 5 to the end, every 15"
            end = high if step > 1 else start

        if start < low or end > high or start > end:
            raise ValueError(f"'{part}' is outside {low}-{high}")

        values.update(range(start, end + 1, step))

    return frozenset(values)


def parse_cron(expression: str) -> CronSchedule:
    """
    Parse a five-field cron expression.

    Raises:
        ScheduleUnparseableError: If the expression is malformed
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ScheduleUnparseableError(expression, "cron expressions need exactly 5 fields")

    minute_f, hour_f, dom_f, month_f, dow_f = fields
    try:
        minutes = _parse_field(minute_f, 0, 59)
        hours = _parse_field(hour_f, 0, 23)
        days_of_month = _parse_field(dom_f, 1, 31)
        months = _parse_field(month_f, 1, 12, _MONTH_NAMES)
        days_of_week = _parse_field(dow_f, 0, 7, _WEEKDAY_NAMES)
    except ValueError as e:
        raise ScheduleUnparseableError(expression, str(e)) from e

    # 7 is an alias for Sunday
    if 7 in days_of_week:
        days_of_week = (days_of_week - {7}) | {0}

    return CronSchedule(
        minutes=tuple(sorted(minutes)),
        hours=tuple(sorted(hours)),
        days_of_month=days_of_month,
        months=months,
        days_of_week=days_of_week,
        dom_restricted=not dom_f.startswith("*"),
        dow_restricted=not dow_f.startswith("*"),
        text=" ".join(fields),
    )


def parse_interval(text: str) -> Optional[IntervalSchedule]:
    """
    Parse an interval like "15m" or "every 2h".

    Returns None if the text does not look like an interval at all.

    Raises:
        ScheduleUnparseableError: If it is an interval shorter than a minute
    """
    match = _INTERVAL_RE.match(text.strip())
    if not match:
        return None
    amount = int(match.group(1))
    unit = (match.group(2) or "m").lower()
    minutes = amount * _UNIT_MINUTES[unit]
    if minutes < 1:
        raise ScheduleUnparseableError(text, "interval must be at least 1 minute")
    return IntervalSchedule(minutes=minutes)


def parse_schedule(value: Union[str, int]) -> Schedule:
    """
    Parse a schedule into an interval or cron schedule.

    Integers are minutes, as submitted by the interval picker.

    Raises:
        ScheduleUnparseableError: If the value is neither form
    """
    if isinstance(value, bool):
        raise ScheduleUnparseableError(str(value), "not a schedule")
    if isinstance(value, int):
        if value < 1:
            raise ScheduleUnparseableError(str(value), "interval must be at least 1 minute")
        return IntervalSchedule(minutes=value)
    if not isinstance(value, str) or not value.strip():
        raise ScheduleUnparseableError(str(value or ""), "schedule is empty")

    interval = parse_interval(value)
    if interval is not None:
        return interval
    return parse_cron(value.strip())
