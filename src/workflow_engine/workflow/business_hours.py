"""Elapsed-time arithmetic for timeouts, with optional business hours.

Without business hours every duration is calendar time. With business hours,
only time inside the working window on working days counts, and a "day" is one
working day (the length of the window).
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from .models import BusinessHours, TimeUnit, WorkflowDefinition

_UNIT_MINUTES: dict[str, int] = {"minutes": 1, "hours": 60, "days": 24 * 60}


def _zone(name: str) -> tzinfo:
    if name.upper() in {"UTC", "ETC/UTC", "Z"}:
        return UTC
    return ZoneInfo(name)


def _parse_time(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes))


def working_day_length(hours: BusinessHours) -> timedelta:
    start = _parse_time(hours.start_time)
    end = _parse_time(hours.end_time)
    return max(
        datetime.combine(date.min, end) - datetime.combine(date.min, start),
        timedelta(0),
    )


def duration_to_timedelta(
    amount: float, unit: TimeUnit, hours: BusinessHours | None = None
) -> timedelta:
    if unit == "days" and hours is not None:
        return working_day_length(hours) * amount
    return timedelta(minutes=amount * _UNIT_MINUTES[unit])


def _is_work_day(hours: BusinessHours, day: datetime) -> bool:
    # BusinessHours counts 0 = Sunday; Python counts 0 = Monday.
    return (day.weekday() + 1) % 7 in hours.work_days and day.date() not in hours.holidays


def working_time_between(hours: BusinessHours, start: datetime, end: datetime) -> timedelta:
    """Time between ``start`` and ``end`` that falls inside business hours."""

    if end <= start:
        return timedelta(0)

    zone = _zone(hours.timezone)
    local_start = start.astimezone(zone)
    local_end = end.astimezone(zone)
    opens = _parse_time(hours.start_time)
    closes = _parse_time(hours.end_time)

    total = timedelta(0)
    day = local_start.replace(hour=0, minute=0, second=0, microsecond=0)
    while day.date() <= local_end.date():
        if _is_work_day(hours, day):
            window_start = datetime.combine(day.date(), opens, tzinfo=zone)
            window_end = datetime.combine(day.date(), closes, tzinfo=zone)
            lo = max(window_start, local_start)
            hi = min(window_end, local_end)
            if hi > lo:
                # Subtract in UTC so DST shifts inside the window are accounted for.
                total += hi.astimezone(UTC) - lo.astimezone(UTC)
        day = datetime.combine(day.date() + timedelta(days=1), time(0), tzinfo=zone)
    return total


def elapsed_between(definition: WorkflowDefinition, start: datetime, end: datetime) -> timedelta:
    hours = definition.settings.business_hours
    if hours is not None:
        return working_time_between(hours, start, end)
    return max(end - start, timedelta(0))
