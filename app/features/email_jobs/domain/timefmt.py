"""
Time helpers for email scheduling and display.

All stored times are UTC; everything shown to recipients is Eastern time.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

EASTERN = ZoneInfo("America/New_York")
MAX_SCHEDULE_DAYS = 30


def format_session_date(value: datetime) -> str:
    """e.g. 'Monday, December 8, 2024'"""
    local = value.astimezone(EASTERN)
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def format_session_time(value: datetime) -> str:
    """e.g. '1:00 PM ET'"""
    local = value.astimezone(EASTERN)
    hour = local.hour % 12 or 12
    return f"{hour}:{local:%M} {local:%p} ET"


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def is_valid_schedule_time(
    when: datetime, now: datetime, max_days: int = MAX_SCHEDULE_DAYS
) -> bool:
    """In the future and no more than `max_days` ahead."""
    return now < when <= now + timedelta(days=max_days)


def delay_seconds(when: datetime, now: datetime) -> int:
    """Queue delay for `when`; past-due times deliver immediately."""
    return max(0, int((when - now).total_seconds()))
