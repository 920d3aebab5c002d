"""
Next-run computation for backup schedules.

Everything here is pure: ``now`` and the schedule's timezone are explicit
inputs and nothing reads the process clock, so boundary dates (month and
year rollover, leap years, DST changes) can be tested directly.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from backup_scheduler.domain.schedule import Frequency, Schedule, ShortMonthPolicy, as_utc

# A monthly schedule always finds a slot within this many months.
_MONTH_SEARCH_LIMIT = 24


def _at(day: date, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=zone).astimezone(timezone.utc)


def _to_sunday_based(day: date) -> int:
    # date.weekday() is Monday=0; schedules use Sunday=0
    return (day.weekday() + 1) % 7


def next_daily(schedule: Schedule, now: datetime) -> datetime:
    zone = schedule.zone
    hour, minute = schedule.hour_minute
    today = now.astimezone(zone).date()
    candidate = _at(today, hour, minute, zone)
    if candidate <= now:
        candidate = _at(today + timedelta(days=1), hour, minute, zone)
    return candidate


def next_weekly(schedule: Schedule, now: datetime) -> datetime:
    zone = schedule.zone
    hour, minute = schedule.hour_minute
    today = now.astimezone(zone).date()
    days_ahead = (schedule.day_of_week - _to_sunday_based(today)) % 7
    candidate = _at(today + timedelta(days=days_ahead), hour, minute, zone)
    if candidate <= now:
        candidate = _at(today + timedelta(days=days_ahead + 7), hour, minute, zone)
    return candidate


def monthly_run_day(year: int, month: int, day_of_month: int, policy: Optional[ShortMonthPolicy]) -> Optional[date]:
    """
    The day a monthly schedule runs in the given month, or None if the month is skipped.
    """
    last_day = calendar.monthrange(year, month)[1]
    if day_of_month <= last_day:
        return date(year, month, day_of_month)
    if policy == ShortMonthPolicy.CLAMP:
        return date(year, month, last_day)
    return None


def next_monthly(schedule: Schedule, now: datetime) -> datetime:
    zone = schedule.zone
    hour, minute = schedule.hour_minute
    local_now = now.astimezone(zone)
    year, month = local_now.year, local_now.month
    for _ in range(_MONTH_SEARCH_LIMIT):
        day = monthly_run_day(year, month, schedule.day_of_month, schedule.short_month_policy)
        if day is not None:
            candidate = _at(day, hour, minute, zone)
            if candidate > now:
                return candidate
        month += 1
        if month > 12:
            year, month = year + 1, 1
    raise ValueError(f"No run day found for day_of_month={schedule.day_of_month}")


def next_cron(schedule: Schedule, now: datetime) -> datetime:
    local_now = now.astimezone(schedule.zone)
    itr = croniter(schedule.cron_expression, local_now)
    candidate = as_utc(itr.get_next(datetime))
    # croniter already returns the first match strictly after its start time
    while candidate <= now:
        candidate = as_utc(itr.get_next(datetime))
    return candidate


def next_run(schedule: Schedule, now: datetime) -> Optional[datetime]:
    """
    Compute the next due instant of a schedule, strictly after ``now``.

    Args:
        schedule (Schedule): The schedule definition.
        now (datetime): Reference instant. Naive values are read as UTC.

    Returns:
        Optional[datetime]: The next run in UTC, or None for manual or disabled schedules.
    """
    if not schedule.enabled or schedule.frequency == Frequency.MANUAL:
        return None
    now = as_utc(now)
    if schedule.frequency == Frequency.DAILY:
        return next_daily(schedule, now)
    if schedule.frequency == Frequency.WEEKLY:
        return next_weekly(schedule, now)
    if schedule.frequency == Frequency.MONTHLY:
        return next_monthly(schedule, now)
    if schedule.frequency == Frequency.CUSTOM:
        return next_cron(schedule, now)
    raise ValueError(f"Unsupported schedule frequency: {schedule.frequency}")
