"""Email schedule settings and recurring trigger patterns.

Patterns use the five-field cron layout ``"minute hour * * dayOfWeek"``
with ISO day numbering (1 = Monday .. 7 = Sunday), e.g. ``"0 9 * * *"`` for
daily at 09:00 and ``"0 9 * * 1"`` for Mondays at 09:00.
"""

import logging
from typing import Any, Literal, Mapping, Optional, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DAY_NAMES = {
    1: "Monday",
    2: "Tuesday",
    3: "Wednesday",
    4: "Thursday",
    5: "Friday",
    6: "Saturday",
    7: "Sunday",
}

# APScheduler numbers days from 0 = Monday, so map by name instead
CRON_DAY_ABBREVIATIONS = {
    1: "mon",
    2: "tue",
    3: "wed",
    4: "thu",
    5: "fri",
    6: "sat",
    7: "sun",
}


class ScheduleValidationError(ValueError):
    """Raised when schedule settings or a trigger pattern are invalid."""


class EmailSchedule(BaseModel):
    """Persisted digest schedule."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    frequency: Literal["daily", "weekly"]
    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    day_of_week: Optional[int] = Field(default=None, ge=1, le=7, alias="dayOfWeek")

    @model_validator(mode="after")
    def check_weekly_day(self) -> "EmailSchedule":
        if self.frequency == "weekly" and self.day_of_week is None:
            raise ValueError("dayOfWeek is required for weekly schedules (1 = Monday, 7 = Sunday)")
        return self

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


DEFAULT_EMAIL_SCHEDULE = EmailSchedule(frequency="daily", hour=9)


def validate_schedule(data: Union[EmailSchedule, Mapping[str, Any]]) -> EmailSchedule:
    """
    Validate raw schedule settings.

    Args:
        data: An EmailSchedule or a mapping using field names or aliases

    Returns:
        The validated schedule

    Raises:
        ScheduleValidationError: If any value is missing or out of range
    """
    if isinstance(data, EmailSchedule):
        return data
    try:
        return EmailSchedule.model_validate(data)
    except ValidationError as e:
        raise ScheduleValidationError(str(e)) from e


def to_trigger_pattern(schedule: Union[EmailSchedule, Mapping[str, Any]]) -> str:
    """Convert schedule settings into a ``"minute hour * * dayOfWeek"`` pattern."""
    schedule = validate_schedule(schedule)
    day = "*" if schedule.frequency == "daily" else str(schedule.day_of_week)
    return f"{schedule.minute} {schedule.hour} * * {day}"


def parse_pattern(pattern: str) -> tuple[int, int, Optional[int]]:
    """
    Split a trigger pattern into (minute, hour, day_of_week).

    ``day_of_week`` is None for daily patterns.

    Raises:
        ScheduleValidationError: If the pattern is not one this module produces
    """
    parts = pattern.split()
    if len(parts) != 5 or parts[2] != "*" or parts[3] != "*":
        raise ScheduleValidationError(f"Unsupported trigger pattern: {pattern!r}")

    minute_str, hour_str, _, _, day_str = parts
    try:
        minute = int(minute_str)
        hour = int(hour_str)
        day = None if day_str == "*" else int(day_str)
    except ValueError as e:
        raise ScheduleValidationError(f"Unsupported trigger pattern: {pattern!r}") from e

    if not 0 <= minute <= 59:
        raise ScheduleValidationError(f"Invalid minute {minute} in pattern {pattern!r}")
    if not 0 <= hour <= 23:
        raise ScheduleValidationError(f"Invalid hour {hour} in pattern {pattern!r}")
    if day is not None and day not in DAY_NAMES:
        raise ScheduleValidationError(f"Invalid day of week {day} in pattern {pattern!r}")

    return minute, hour, day


def describe(pattern: str) -> str:
    """
    Human-readable description of a trigger pattern, for logs and the API.

    Malformed patterns are returned unchanged.
    """
    try:
        minute, hour, day = parse_pattern(pattern)
    except ScheduleValidationError:
        return pattern

    time_str = f"{hour:02d}:{minute:02d}"
    if day is None:
        return f"Daily at {time_str}"
    return f"Weekly on {DAY_NAMES[day]} at {time_str}"


def build_cron_trigger(pattern: str, timezone: Optional[str] = None) -> CronTrigger:
    """Build an APScheduler trigger that fires on the given pattern."""
    minute, hour, day = parse_pattern(pattern)
    return CronTrigger(
        minute=minute,
        hour=hour,
        day_of_week=CRON_DAY_ABBREVIATIONS[day] if day is not None else "*",
        timezone=timezone,
    )
