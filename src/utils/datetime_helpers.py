"""
Standardized Date Handling Utilities

All streak, challenge, and daily-limit logic is keyed on calendar dates,
never on timestamps. This module is the single place that turns "now"
into a local calendar date.

RULES:
- Timestamps (unlocked_at, completed_at) are stored in UTC (use now_utc())
- Calendar dates are resolved in the configured timezone (use today_in_timezone())
- Weeks start on Monday
"""

import logging
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """
    Get current datetime in UTC (timezone-aware)

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(ZoneInfo("UTC"))


def resolve_timezone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA timezone name, falling back to the default zone"""
    name = tz_name or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.error(f"Invalid timezone '{name}': {e}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def today_in_timezone(tz_name: Optional[str] = None) -> date:
    """
    Get today's calendar date in the given timezone

    Args:
        tz_name: IANA timezone (defaults to DEFAULT_TIMEZONE)

    Returns:
        Today's date in that timezone
    """
    return datetime.now(resolve_timezone(tz_name)).date()


def previous_day(day: date) -> date:
    """The calendar day before `day`"""
    return day - timedelta(days=1)


def next_day(day: date) -> date:
    return day + timedelta(days=1)


def get_week_start(day: date) -> date:
    """
    Get the Monday of the week containing `day`

    Sunday belongs to the week that started six days earlier.
    """
    return day - timedelta(days=day.weekday())


def get_last_week_range(day: date) -> tuple[date, date]:
    """
    Get (monday, sunday) of the week before the one containing `day`
    """
    this_week = get_week_start(day)
    last_week_start = this_week - timedelta(days=7)
    return last_week_start, this_week - timedelta(days=1)


def parse_iso_date(value: Union[str, date, datetime]) -> date:
    """
    Parse a YYYY-MM-DD string (or pass through a date)

    Raises:
        ValueError: If the string is not an ISO calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid date format '{value}'. Expected YYYY-MM-DD") from e


def to_iso_date(day: Optional[date]) -> Optional[str]:
    return day.isoformat() if day else None


def days_between(earlier: date, later: date) -> int:
    """Whole calendar days from `earlier` to `later` (negative if reversed)"""
    return (later - earlier).days


@dataclass(frozen=True)
class Clock:
    """
    Date source handed to the engines.

    The route layer builds one per request from the caller's timezone;
    tests pin `fixed_today` so date-keyed logic is deterministic.
    """

    tz_name: str = DEFAULT_TIMEZONE
    fixed_today: Optional[date] = None

    def today(self) -> date:
        if self.fixed_today is not None:
            return self.fixed_today
        return today_in_timezone(self.tz_name)

    def now(self) -> datetime:
        """Current UTC timestamp, for unlock/completion stamps"""
        if self.fixed_today is not None:
            return datetime.combine(self.fixed_today, datetime.min.time(), tzinfo=ZoneInfo("UTC")) + timedelta(hours=12)
        return now_utc()

    def yesterday(self) -> date:
        return previous_day(self.today())

    def week_start(self) -> date:
        return get_week_start(self.today())
