"""Datetime parsing and formatting helpers shared by calendar code."""
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

import dateparser

from config.settings import settings

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA name, falling back to the configured default."""
    try:
        return ZoneInfo(tz_name or settings.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, using {settings.DEFAULT_TIMEZONE}")
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


def parse_datetime(value) -> Optional[datetime]:
    """
    Parse an ISO string (or loose natural-language datetime) into an aware datetime.

    Naive values are assumed to be UTC. Returns None when unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = dateparser.parse(raw, settings={"RETURN_AS_TIMEZONE_AWARE": False})
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(value, label: str) -> str:
    """Normalize a datetime-ish value to RFC 3339, raising ValueError if invalid."""
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid {label} datetime: {value!r}")
    return parsed.isoformat()


def plus_days_iso(days: int, base: Optional[datetime] = None) -> str:
    return ((base or now_utc()) + timedelta(days=days)).isoformat()


def format_event_date(value: str, tz_name: Optional[str] = None) -> str:
    """Short human form, e.g. 'Sat, Oct 24, 7:00 PM', or 'Sat, Oct 24' for all-day dates."""
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            day = date.fromisoformat(value.strip())
        except ValueError:
            day = None
        # all-day dates carry no time zone
        if day is not None:
            return f"{day:%a, %b} {day.day}"
    parsed = parse_datetime(value)
    if parsed is None:
        return value
    local = parsed.astimezone(get_zone(tz_name))
    hour = local.hour % 12 or 12
    return f"{local:%a, %b} {local.day}, {hour}:{local:%M} {local:%p}"
