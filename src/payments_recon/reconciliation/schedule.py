"""Next-run calculation for recurring reconciliation jobs."""

import calendar
import enum
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..timeutils import utc_now


class Frequency(str, enum.Enum):
    """How often a scheduled reconciliation runs."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleConfig(BaseModel):
    """Recurrence configuration of a scheduled reconciliation.

    ``day_of_week`` counts from Sunday = 0 to Saturday = 6.
    """
    frequency: Frequency
    day_of_week: Optional[int] = Field(None, ge=0, le=6, description="Required for weekly schedules")
    day_of_month: Optional[int] = Field(None, ge=1, le=31, description="Required for monthly schedules")
    hour: int = Field(default=0, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)

    @model_validator(mode="after")
    def _check_frequency_fields(self) -> "ScheduleConfig":
        if self.frequency == Frequency.WEEKLY:
            if self.day_of_week is None:
                raise ValueError("day_of_week (0-6) is required for weekly schedules")
            self.day_of_month = None
        elif self.frequency == Frequency.MONTHLY:
            if self.day_of_month is None:
                raise ValueError("day_of_month (1-31) is required for monthly schedules")
            self.day_of_week = None
        else:
            self.day_of_week = None
            self.day_of_month = None
        return self


def _sunday_based_weekday(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


def _last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to that month's last day."""
    year, month = (moment.year + 1, 1) if moment.month == 12 else (moment.year, moment.month + 1)
    day = min(moment.day, _last_day_of_month(year, month))
    return moment.replace(year=year, month=month, day=day)


def next_run(config: ScheduleConfig, now: Optional[datetime] = None) -> datetime:
    """Compute the next execution instant strictly after ``now``.

    The configured time of day is applied to ``now``; if that instant is not
    in the future (an exact match counts as past) the search starts from
    tomorrow. Weekly schedules then move forward to the configured weekday,
    monthly schedules to the configured day of the month, falling back to the
    month's last day when the day does not exist (31 in April, 30 in
    February).

    ``config`` is assumed to be valid; ``ScheduleConfig`` validates on
    construction.

    Args:
        config: Recurrence configuration.
        now: Reference instant. Defaults to the current UTC time. The result
            keeps the tzinfo of ``now``.

    Returns:
        The next run time.
    """
    if now is None:
        now = utc_now()

    candidate = now.replace(hour=config.hour, minute=config.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)

    if config.frequency == Frequency.WEEKLY and config.day_of_week is not None:
        days_ahead = (config.day_of_week - _sunday_based_weekday(candidate)) % 7
        candidate += timedelta(days=days_ahead)

    elif config.frequency == Frequency.MONTHLY and config.day_of_month is not None:
        if config.day_of_month < candidate.day:
            candidate = _add_one_month(candidate)
        last_day = _last_day_of_month(candidate.year, candidate.month)
        candidate = candidate.replace(day=min(config.day_of_month, last_day))

    return candidate
