"""
Date and Time utilities

This module handles XMLTV timestamp parsing, "HH:MM" refresh intervals and the
fixed display offset used for status output.
Centralizes all date parsing logic to maintain consistency across the application.
"""
from datetime import datetime, timedelta, timezone
import logging
import re

from iptv_cache.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL = timedelta(hours=12)
DEFAULT_TIMEZONE_OFFSET = "+2:00"

_XMLTV_TIME_PATTERN = re.compile(
    r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})\s*([+-])(\d{2})(\d{2})$"
)
_INTERVAL_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")
_OFFSET_PATTERN = re.compile(r"^([+-])(\d{1,2}):(\d{2})$")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_xmltv_time(time_str: str | None) -> datetime | None:
    """
    Convert an XMLTV timestamp to a UTC datetime

    Args:
        time_str: XMLTV time like '20080715003000 -0600'

    Returns:
        Timezone-aware datetime in UTC, or None when the value does not match
        'YYYYMMDDHHMMSS ±HHMM' or names an impossible date
    """
    if not time_str:
        return None

    match = _XMLTV_TIME_PATTERN.match(time_str.strip())
    if not match:
        return None

    year, month, day, hour, minute, second, sign, tz_hours, tz_mins = match.groups()
    offset = timedelta(hours=int(tz_hours), minutes=int(tz_mins))
    if sign == "-":
        offset = -offset

    try:
        local = datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(second),
            tzinfo=timezone(offset),
        )
    except ValueError:
        return None

    return local.astimezone(timezone.utc)


def parse_update_interval(value: str) -> timedelta:
    """
    Parse an "HH:MM" refresh interval

    Raises:
        ValidationError: If the string is not HH:MM with hours < 24 and minutes < 60
    """
    match = _INTERVAL_PATTERN.match(value.strip()) if value else None
    if not match:
        raise ValidationError(f"Invalid update interval '{value}', expected HH:MM")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours >= 24 or minutes >= 60:
        raise ValidationError(f"Update interval out of range: '{value}'")

    return timedelta(hours=hours, minutes=minutes)


def resolve_update_interval(value: str | None) -> timedelta:
    """Return the configured interval, or the 12h default when missing or malformed"""
    if not value:
        return DEFAULT_UPDATE_INTERVAL
    try:
        return parse_update_interval(value)
    except ValidationError as exc:
        logger.warning("%s; using default of %s", exc, DEFAULT_UPDATE_INTERVAL)
        return DEFAULT_UPDATE_INTERVAL


def parse_timezone_offset(value: str) -> timezone:
    """
    Parse a display offset such as '+2:00' or '-05:30'

    Raises:
        ValidationError: If the value does not look like ±H:MM
    """
    match = _OFFSET_PATTERN.match(value.strip()) if value else None
    if not match:
        raise ValidationError(f"Invalid timezone offset '{value}', expected ±H:MM")

    sign, hours, minutes = match.groups()
    if int(minutes) >= 60:
        raise ValidationError(f"Invalid timezone offset '{value}', minutes out of range")

    delta = timedelta(hours=int(hours), minutes=int(minutes))
    if delta >= timedelta(hours=24):
        raise ValidationError(f"Invalid timezone offset '{value}', must be under 24h")
    return timezone(-delta if sign == "-" else delta)


def resolve_timezone_offset(value: str | None) -> tuple[str, timezone]:
    """Return (label, tzinfo) for the configured offset, falling back to +2:00"""
    if value:
        try:
            return value, parse_timezone_offset(value)
        except ValidationError as exc:
            logger.warning("%s; using default %s", exc, DEFAULT_TIMEZONE_OFFSET)
    return DEFAULT_TIMEZONE_OFFSET, parse_timezone_offset(DEFAULT_TIMEZONE_OFFSET)


def format_local_time(value: datetime | None, tz: timezone) -> str:
    """Render a UTC instant as HH:MM in the display offset"""
    if value is None:
        return ""
    return value.astimezone(tz).strftime("%H:%M")
