# backend/app/domain/deficiencies/dates.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidArgument


def _zone(tz_name: Optional[str], fallback: str) -> ZoneInfo:
    for name in (tz_name, fallback):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def unix_to_date_string(timestamp: Any, tz_name: Optional[str], *, fallback_tz: str = "UTC") -> str:
    """Unix seconds -> "MM-DD-YYYY TZ" in the given zone."""
    try:
        seconds = int(float(timestamp or 0))
    except (TypeError, ValueError):
        seconds = 0
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc).astimezone(_zone(tz_name, fallback_tz))
    return dt.strftime("%m-%d-%Y %Z")


def _end_of_day(day: str, tz_name: Optional[str], fallback_tz: str) -> datetime:
    try:
        d = datetime.strptime((day or "").strip(), "%m/%d/%Y")
    except ValueError as e:
        raise InvalidArgument(f"bad day {day!r}, expected MM/DD/YYYY") from e
    return d.replace(hour=23, minute=59, second=59, tzinfo=_zone(tz_name, fallback_tz))


def day_to_iso8601(day: str, tz_name: Optional[str], *, fallback_tz: str = "UTC") -> str:
    """
    "MM/DD/YYYY" -> end of that day in the property's zone, e.g.
    "2030-11-18T23:59:59.000-06:00". Trello treats this as the card due time.
    """
    return _end_of_day(day, tz_name, fallback_tz).isoformat(timespec="milliseconds")


def day_to_unix(day: str, tz_name: Optional[str], *, fallback_tz: str = "UTC") -> int:
    """Same instant as day_to_iso8601, as unix seconds."""
    return int(_end_of_day(day, tz_name, fallback_tz).timestamp())
