"""
Schedule evaluation for maintenance jobs.

Everything here is pure: the caller passes ``as_of`` and gets an answer,
nothing reads the wall clock or the database.  Cron expressions use the
usual five fields (minute, hour, day of month, month, day of week with
0 = Sunday) and support ``*``, lists, ranges and steps.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from procure_batch.domain.types import BatchRunStatus, JobSchedule, ScheduleFrequency

# (name, lowest, highest) in expression order
_CRON_FIELDS = (
    ("minutes", 0, 59),
    ("hours", 0, 23),
    ("days_of_month", 1, 31),
    ("months", 1, 12),
    ("days_of_week", 0, 6),
)

_FIXED_INTERVALS = {
    ScheduleFrequency.HOURLY: timedelta(hours=1),
    ScheduleFrequency.DAILY: timedelta(days=1),
    ScheduleFrequency.WEEKLY: timedelta(weeks=1),
}

_SEARCH_HORIZON = timedelta(days=366)


def _every(low: int, high: int) -> frozenset[int]:
    return frozenset(range(low, high + 1))


@dataclass(frozen=True)
class CronSpec:
    """Allowed values per cron field; the defaults match everything."""

    minutes: frozenset[int] = field(default_factory=lambda: _every(0, 59))
    hours: frozenset[int] = field(default_factory=lambda: _every(0, 23))
    days_of_month: frozenset[int] = field(default_factory=lambda: _every(1, 31))
    months: frozenset[int] = field(default_factory=lambda: _every(1, 12))
    days_of_week: frozenset[int] = field(default_factory=lambda: _every(0, 6))


def _parse_cron_term(term: str, low: int, high: int) -> range:
    base, _, step_text = term.partition("/")
    step = int(step_text) if step_text else 1
    if step < 1:
        raise ValueError(f"Cron step must be positive: '{term}'")

    if base == "*":
        first, last = low, high
    elif "-" in base:
        first_text, last_text = base.split("-", 1)
        first, last = int(first_text), int(last_text)
    else:
        first = int(base)
        # "N/S" runs from N to the top of the field
        last = high if step_text else first

    if first > last:
        raise ValueError(f"Cron range runs backwards: '{term}'")
    if first < low or last > high:
        raise ValueError(f"Cron value outside {low}-{high}: '{term}'")
    return range(first, last + 1, step)


def _parse_cron_field(text: str, low: int, high: int) -> frozenset[int]:
    """Expand one comma-separated cron field. Raises ValueError when malformed."""
    values: set[int] = set()
    for term in text.split(","):
        values.update(_parse_cron_term(term.strip(), low, high))
    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    parts = expression.split()
    if len(parts) != len(_CRON_FIELDS):
        raise ValueError(
            f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'"
        )
    return CronSpec(**{
        name: _parse_cron_field(part, low, high)
        for part, (name, low, high) in zip(parts, _CRON_FIELDS)
    })


def _day_matches(spec: CronSpec, dt: datetime) -> bool:
    cron_weekday = dt.isoweekday() % 7
    return (
        dt.month in spec.months
        and dt.day in spec.days_of_month
        and cron_weekday in spec.days_of_week
    )


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    return _day_matches(spec, dt) and dt.hour in spec.hours and dt.minute in spec.minutes


def _next_cron_match(spec: CronSpec, after: datetime) -> datetime:
    """First matching minute strictly after ``after``, searching up to a year ahead."""
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    horizon = after + _SEARCH_HORIZON

    while candidate <= horizon:
        if not _day_matches(spec, candidate):
            candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
        elif candidate.hour not in spec.hours:
            candidate = candidate.replace(minute=0) + timedelta(hours=1)
        elif candidate.minute not in spec.minutes:
            candidate += timedelta(minutes=1)
        else:
            return candidate

    raise ValueError(f"Cron expression never matches within a year of {after}")


def should_fire(schedule: JobSchedule, as_of: datetime) -> bool:
    """
    Whether ``schedule`` is due at ``as_of``.

    Inactive and on-demand schedules never fire; a one-off fires until it
    has run once.  Otherwise ``next_run_at`` decides, and a schedule that
    has never been planned fires when ``as_of`` matches its cron
    expression (or straight away if it has none).
    """
    if not schedule.is_active or schedule.frequency == ScheduleFrequency.ON_DEMAND:
        return False
    if schedule.frequency == ScheduleFrequency.ONCE:
        return schedule.last_run_at is None
    if schedule.next_run_at is not None:
        return as_of >= schedule.next_run_at
    if schedule.cron_expression:
        return matches_cron(parse_cron(schedule.cron_expression), as_of)
    return True


def compute_next_run(
    frequency: ScheduleFrequency,
    last_run_at: datetime | None,
    cron_expression: str | None = None,
    base_time: datetime | None = None,
) -> datetime | None:
    """Next due time, or None for on-demand and one-off jobs or without a reference time."""
    if frequency in (ScheduleFrequency.ON_DEMAND, ScheduleFrequency.ONCE):
        return None
    reference = base_time or last_run_at
    if reference is None:
        return None
    if cron_expression:
        return _next_cron_match(parse_cron(cron_expression), reference)
    interval = _FIXED_INTERVALS.get(frequency)
    return reference + interval if interval is not None else None


def record_run(
    schedule: JobSchedule,
    ran_at: datetime,
    status: BatchRunStatus,
) -> JobSchedule:
    return replace(
        schedule,
        last_run_at=ran_at,
        last_run_status=status,
        next_run_at=compute_next_run(schedule.frequency, ran_at, schedule.cron_expression),
    )
