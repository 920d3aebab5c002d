from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from backup_scheduler.domain.schedule import Frequency, Schedule, ShortMonthPolicy


def test_manual_is_default():
    schedule = Schedule()
    assert schedule.frequency == Frequency.MANUAL
    assert not schedule.is_recurring
    assert schedule.format_schedule() == "Manual execution only"


@pytest.mark.parametrize("data, missing", [
    ({"frequency": "daily"}, "time"),
    ({"frequency": "weekly", "time": "02:00"}, "day_of_week"),
    ({"frequency": "monthly", "time": "02:00"}, "day_of_month"),
    ({"frequency": "custom"}, "cron_expression"),
])
def test_frequency_requires_its_fields(data, missing):
    with pytest.raises(ValidationError) as exc_info:
        Schedule(**data)
    assert missing in str(exc_info.value)


@pytest.mark.parametrize("value", ["24:00", "2:60", "noon", "0200"])
def test_invalid_time_of_day(value):
    with pytest.raises(ValidationError, match="HH:MM"):
        Schedule(frequency="daily", time=value)


def test_day_of_week_range():
    with pytest.raises(ValidationError):
        Schedule(frequency="weekly", time="02:00", day_of_week=7)


def test_cron_expression_must_have_five_fields():
    with pytest.raises(ValidationError, match="exactly 5 fields"):
        Schedule(frequency="custom", cron_expression="0 0 2 * * *")


def test_cron_expression_must_be_valid():
    with pytest.raises(ValidationError):
        Schedule(frequency="custom", cron_expression="61 2 * * *")


def test_cron_expression_whitespace_is_normalised():
    schedule = Schedule(frequency="custom", cron_expression="  */15   2 * *  1-5 ")
    assert schedule.cron_expression == "*/15 2 * * 1-5"


def test_late_day_of_month_needs_short_month_policy():
    with pytest.raises(ValidationError, match="short_month_policy"):
        Schedule(frequency="monthly", time="02:00", day_of_month=31)

    schedule = Schedule(frequency="monthly", time="02:00", day_of_month=31, short_month_policy="clamp")
    assert schedule.short_month_policy == ShortMonthPolicy.CLAMP


def test_day_of_month_28_needs_no_policy():
    assert Schedule(frequency="monthly", time="02:00", day_of_month=28).short_month_policy is None


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError, match="Unknown timezone"):
        Schedule(frequency="daily", time="02:00", timezone="Mars/Olympus_Mons")


def test_naive_datetimes_are_read_as_utc():
    schedule = Schedule(frequency="daily", time="02:00", next_run=datetime(2024, 3, 16, 2, 0))
    assert schedule.next_run == datetime(2024, 3, 16, 2, 0, tzinfo=timezone.utc)
    assert schedule.next_run.tzinfo is not None


def test_format_schedule():
    weekly = Schedule(frequency="weekly", time="02:00", day_of_week=0, timezone="Europe/Paris")
    assert weekly.format_schedule() == "Every Sunday at 02:00 (Europe/Paris)"

    paused = Schedule(frequency="daily", time="23:30", enabled=False)
    assert paused.format_schedule() == "Daily at 23:30 (UTC), paused"


def test_hour_minute():
    assert Schedule(frequency="daily", time="7:05").hour_minute == (7, 5)
