"""
Minimal 5-field cron evaluator used for display and diagnostics only.

Dispatch never depends on this: the broker computes real fire times with croniter.
This exists so the schedule inventory can show "next run" without a broker round
trip, and so a pattern can be sanity-checked before it is registered.

    ┌───────── minute        0-59
    │ ┌─────── hour          0-23
    │ │ ┌───── day of month  1-31
    │ │ │ ┌─── month         1-12
    │ │ │ │ ┌─ day of week   0-6 (0 = Sunday, 7 also accepted)
    * * * * *

Each field is "*", "*/n" or a comma list of numbers. When both day-of-month and
day-of-week are restricted, a day matches if EITHER does (classic cron rule).
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional

from models.job import utcnow

# Long enough to reach the next Feb 29 for "0 0 29 2 *"
MAX_LOOKAHEAD_DAYS = 366 * 4 + 1


@dataclass(frozen=True)
class CronFields:
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_restricted: bool
    dow_restricted: bool

    def matches_day(self, day) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days_of_month
        dow_ok = (day.weekday() + 1) % 7 in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok


def _parse_field(expr: str, low: int, high: int, name: str) -> list[int]:
    if expr == "*":
        return list(range(low, high + 1))

    if expr.startswith("*/"):
        step = expr[2:]
        if not step.isdigit() or int(step) == 0:
            raise ValueError(f"Invalid step in {name} field: {expr!r}")
        return list(range(low, high + 1, int(step)))

    values = []
    for part in expr.split(","):
        if not part.isdigit():
            raise ValueError(f"Invalid value in {name} field: {expr!r}")
        value = int(part)
        if not low <= value <= high:
            raise ValueError(f"{name} value {value} out of range {low}-{high}")
        values.append(value)
    return values


def parse(pattern: str) -> CronFields:
    """Parse a 5-field pattern. Raises ValueError on anything malformed."""
    parts = pattern.split()
    if len(parts) != 5:
        raise ValueError(f"Cron pattern must have 5 fields, got {len(parts)}: {pattern!r}")
    minute, hour, dom, month, dow = parts

    days_of_week = {0 if d == 7 else d for d in _parse_field(dow, 0, 7, "day-of-week")}
    return CronFields(
        minutes=tuple(sorted(set(_parse_field(minute, 0, 59, "minute")))),
        hours=tuple(sorted(set(_parse_field(hour, 0, 23, "hour")))),
        days_of_month=frozenset(_parse_field(dom, 1, 31, "day-of-month")),
        months=frozenset(_parse_field(month, 1, 12, "month")),
        days_of_week=frozenset(days_of_week),
        dom_restricted=dom != "*",
        dow_restricted=dow != "*",
    )


def next_run(pattern: str, now: Optional[datetime] = None) -> datetime:
    """First minute strictly after `now` that matches the pattern (same timezone as `now`)."""
    fields = parse(pattern)
    start = (now or utcnow()).replace(second=0, microsecond=0) + timedelta(minutes=1)

    day = start.date()
    for _ in range(MAX_LOOKAHEAD_DAYS):
        if fields.matches_day(day):
            for hour in fields.hours:
                for minute in fields.minutes:
                    candidate = datetime.combine(day, time(hour, minute), tzinfo=start.tzinfo)
                    if candidate >= start:
                        return candidate
        day += timedelta(days=1)

    raise ValueError(f"Cron pattern never fires: {pattern!r}")
