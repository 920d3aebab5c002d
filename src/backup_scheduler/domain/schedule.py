import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

TIME_OF_DAY = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to UTC. Naive values are taken to be UTC already,
    which is what SQLite hands back for timezone-aware columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Frequency(str, Enum):
    MANUAL = "manual"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ShortMonthPolicy(str, Enum):
    """
    What a monthly schedule does in months that lack its day_of_month.
    """
    CLAMP = "clamp"
    SKIP = "skip"


class Schedule(BaseModel):
    """
    When a backup job becomes due.
    """
    frequency: Frequency = Field(Frequency.MANUAL, description="Recurrence frequency")
    time: Optional[str] = Field(None, description="Time of day as HH:MM in the schedule's timezone")
    day_of_week: Optional[int] = Field(None, ge=0, le=6, description="0 = Sunday, 6 = Saturday")
    day_of_month: Optional[int] = Field(None, ge=1, le=31, description="Day of month for monthly schedules")
    short_month_policy: Optional[ShortMonthPolicy] = Field(
        None,
        description="Required for day_of_month above 28: clamp to the month's last day or skip the month",
    )
    cron_expression: Optional[str] = Field(None, description="5-field cron expression for custom schedules")
    timezone: str = Field("UTC", description="IANA timezone the schedule is expressed in")
    next_run: Optional[datetime] = Field(None, description="Next due instant (UTC)")
    last_run: Optional[datetime] = Field(None, description="End of the last successful run (UTC)")
    enabled: bool = Field(True, description="Disabled schedules are paused and never due")

    @field_validator("time")
    def check_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not TIME_OF_DAY.match(v):
            raise ValueError("Invalid time format. Use HH:MM")
        return v

    @field_validator("timezone")
    def check_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone '{v}'")
        return v

    @field_validator("cron_expression")
    def check_cron(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = " ".join(v.split())
        if len(v.split(" ")) != 5:
            raise ValueError("Cron expression must have exactly 5 fields: minute hour day-of-month month day-of-week")
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression '{v}'")
        return v

    @field_validator("next_run", "last_run")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            logger.debug("Naive schedule datetime %s treated as UTC", v)
        return as_utc(v)

    @model_validator(mode="after")
    def check_frequency_fields(self) -> "Schedule":
        missing = []
        if self.frequency in (Frequency.DAILY, Frequency.WEEKLY, Frequency.MONTHLY) and not self.time:
            missing.append("time")
        if self.frequency == Frequency.WEEKLY and self.day_of_week is None:
            missing.append("day_of_week")
        if self.frequency == Frequency.MONTHLY and self.day_of_month is None:
            missing.append("day_of_month")
        if self.frequency == Frequency.CUSTOM and not self.cron_expression:
            missing.append("cron_expression")
        if missing:
            raise ValueError(f"{self.frequency.value} schedules require: {', '.join(missing)}")
        if (
            self.frequency == Frequency.MONTHLY
            and self.day_of_month is not None
            and self.day_of_month > 28
            and self.short_month_policy is None
        ):
            raise ValueError(
                f"day_of_month {self.day_of_month} does not exist in every month; "
                "set short_month_policy to 'clamp' or 'skip'"
            )
        return self

    @property
    def is_recurring(self) -> bool:
        return self.frequency != Frequency.MANUAL

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def hour_minute(self) -> Tuple[int, int]:
        hours, minutes = (self.time or "00:00").split(":")
        return int(hours), int(minutes)

    def format_schedule(self) -> str:
        if self.frequency == Frequency.MANUAL:
            return "Manual execution only"
        if self.frequency == Frequency.DAILY:
            text = f"Daily at {self.time}"
        elif self.frequency == Frequency.WEEKLY:
            text = f"Every {WEEKDAY_NAMES[self.day_of_week]} at {self.time}"
        elif self.frequency == Frequency.MONTHLY:
            text = f"Monthly on day {self.day_of_month} at {self.time}"
        else:
            text = f"Cron '{self.cron_expression}'"
        text += f" ({self.timezone})"
        if not self.enabled:
            text += ", paused"
        return text
