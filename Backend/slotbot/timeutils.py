"""
Date/time helpers for human entry and display.

Validation and formatting are deliberately asymmetric: validate_date_time()
raises so a data-entry flow halts on bad input, while format_date_time() never
raises so rendering a list can't crash on a malformed row.

All times are naive and interpreted in the business zone (LOCAL_TIMEZONE).
"""

import logging
import re
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from .core.config import get_settings
from .core.errors import InvalidDateTime

logger = logging.getLogger(__name__)

INVALID_DATE_TIME = "Invalid date and time"
ENTRY_FORMAT_HINT = "YYYY-MM-DD HH:MM"
MIN_YEAR = 2000

_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


def local_now() -> datetime:
    """Current wall-clock time in the business zone, without tzinfo."""
    tz = ZoneInfo(get_settings().local_timezone)
    return datetime.now(tz).replace(tzinfo=None)


def slot_datetime(slot_date: date, slot_time: time) -> datetime:
    return datetime.combine(slot_date, slot_time)


def validate_date_time(date_str: str | None, time_str: str | None) -> tuple[date, time]:
    """
    Validate a human-entered date and time.

    Args:
        date_str: Date as YYYY-MM-DD (year >= 2000)
        time_str: Time as HH:MM, 24-hour clock

    Returns:
        Parsed (date, time) tuple

    Raises:
        InvalidDateTime: If either part is missing or not a real day/time
    """
    date_match = _DATE_RE.match((date_str or "").strip())
    time_match = _TIME_RE.match((time_str or "").strip())
    if not date_match or not time_match:
        raise InvalidDateTime(details={"date": date_str, "time": time_str})

    year, month, day = (int(part) for part in date_match.groups())
    hour, minute = int(time_match.group(1)), int(time_match.group(2))
    if year < MIN_YEAR:
        raise InvalidDateTime(details={"date": date_str, "time": time_str})
    try:
        return date(year, month, day), time(hour, minute)
    except ValueError:
        raise InvalidDateTime(details={"date": date_str, "time": time_str})


def parse_entry(text: str | None) -> tuple[date, time]:
    """Parse a single 'YYYY-MM-DD HH:MM' message into (date, time)."""
    parts = (text or "").split()
    if len(parts) != 2:
        raise InvalidDateTime(details={"text": text})
    return validate_date_time(parts[0], parts[1])


def _as_text(value) -> str | None:
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def format_date_time(date_value, time_value) -> str:
    """
    Render a slot moment as DD-MM-YYYY HH:MM.

    Accepts ISO strings or date/time objects. Returns INVALID_DATE_TIME
    instead of raising when either part is absent or out of range.
    """
    date_str = _as_text(date_value)
    time_str = _as_text(time_value)
    if date_str is None or time_str is None:
        logger.debug(f"Cannot format empty date/time: date={date_value!r}, time={time_value!r}")
        return INVALID_DATE_TIME

    try:
        year, month, day = (int(part) for part in date_str.split("-"))
        hour_part, minute_part = time_str.split(":")[:2]
        hour, minute = int(hour_part), int(minute_part)
    except ValueError:
        logger.debug(f"Cannot format date/time: date={date_value!r}, time={time_value!r}")
        return INVALID_DATE_TIME

    if year < MIN_YEAR or not 1 <= month <= 12 or not 1 <= day <= 31:
        return INVALID_DATE_TIME
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        return INVALID_DATE_TIME

    return f"{day:02d}-{month:02d}-{year} {hour:02d}:{minute:02d}"


def hours_until(start: datetime, now: datetime) -> float:
    return (start - now).total_seconds() / 3600
