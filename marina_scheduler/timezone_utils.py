# marina_scheduler/timezone_utils.py
#
# Calendar helpers: "today" in the marina's timezone, planning weeks and
# date parsing for scheduled dates (no time-of-day granularity).

from datetime import date, datetime, timedelta, timezone
from typing import List
import os

import pytz

# Planning weeks run Monday to Sunday in the marina's local timezone
DEFAULT_TIMEZONE = os.getenv("APP_TIMEZONE", "Europe/Paris")
_tz = pytz.timezone(DEFAULT_TIMEZONE)

DAYS_PER_WEEK = 7


def now() -> datetime:
    """Get current timezone-aware datetime in the marina's timezone."""
    return datetime.now(_tz)


def today() -> date:
    return now().date()


def utc_timestamp() -> str:
    """ISO timestamp (UTC) used for updated_at / recorded_at columns."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def week_start_for(d: date) -> date:
    """Return the Monday of the week containing d."""
    return d - timedelta(days=d.weekday())  # monday = 0


def week_days(week_start: date) -> List[date]:
    start = week_start_for(week_start)
    return [start + timedelta(days=i) for i in range(DAYS_PER_WEEK)]


def parse_date(value) -> date:
    """
    Parse a scheduled date.
    Accepts date objects, datetimes (time-of-day is dropped) and ISO strings
    ("2024-06-10" or "2024-06-10T09:00:00").

    Raises:
        ValueError: value is not a calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError(f"Not a date: {value!r}")
    text = value.strip()
    if "T" in text:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)
