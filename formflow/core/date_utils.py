"""Date and time helpers shared by the evaluator and the wait handler.

All instants are naive datetimes in UTC, matching how they are stored.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple


TIME_ONLY_PATTERN = re.compile(r'^(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?$')
DATE_ONLY_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def utc_now() -> datetime:
    """Current instant as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def normalize_time_string(value: Any) -> Optional[str]:
    """Return a zero-padded HH:MM:SS string for time-only input, else None."""
    if not isinstance(value, str):
        return None
    match = TIME_ONLY_PATTERN.match(value.strip())
    if not match:
        return None
    hours, minutes, seconds = match.group(1), match.group(2), match.group(3) or "0"
    return f"{int(hours):02d}:{int(minutes):02d}:{int(seconds):02d}"


def is_date_only(value: Any) -> bool:
    """True when the value names a calendar day without a time of day."""
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and bool(DATE_ONLY_PATTERN.match(value.strip()))


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a value into a naive UTC instant.

    Accepts datetime and date objects, epoch seconds, and ISO 8601 strings
    (a trailing ``Z`` is understood). Returns None when the value is not a date.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def day_bounds(value: Any) -> Optional[Tuple[datetime, datetime]]:
    """
    Half-open range covered by a value.

    A date-only value covers its whole day; an instant covers itself, so the
    range is empty and only its start is meaningful.
    """
    instant = parse_datetime(value)
    if instant is None:
        return None
    if is_date_only(value):
        start = start_of_day(instant)
        return start, start + timedelta(days=1)
    return instant, instant


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min)


def start_of_week(value: datetime) -> datetime:
    """Monday 00:00 of the ISO week containing ``value``."""
    day = start_of_day(value)
    return day - timedelta(days=day.weekday())


def start_of_month(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def add_months(value: datetime, months: int) -> datetime:
    """Shift a first-of-month datetime by a number of months."""
    month_index = value.year * 12 + (value.month - 1) + months
    return value.replace(year=month_index // 12, month=month_index % 12 + 1)


def start_of_year(value: datetime) -> datetime:
    return datetime(value.year, 1, 1)
