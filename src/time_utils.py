"""Time zone and calendar-key helpers for UTC storage and zoned cadences."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True)
class ZonedParts:
    """Calendar parts of an instant as observed in one time zone."""

    year: int
    month: int
    day: int
    hour: int
    weekday: int  # 0=Sunday … 6=Saturday


def resolve_zone(name: str | None) -> ZoneInfo:
    """Return a ZoneInfo for the name, falling back to UTC when unknown."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def zoned_parts(value: datetime, zone_name: str | None) -> ZonedParts:
    """Return calendar parts for an instant in the named zone."""
    local = to_utc(value).astimezone(resolve_zone(zone_name))
    return ZonedParts(
        year=local.year,
        month=local.month,
        day=local.day,
        hour=local.hour,
        weekday=_sunday_based_weekday(local.date()),
    )


def is_same_day_in_zone(
    previous: str | datetime | None,
    current: datetime | None,
    zone_name: str | None,
) -> bool:
    """Return True when both instants fall on the same calendar day in the zone."""
    if not previous or current is None or not zone_name:
        return False
    earlier = parse_timestamp(previous)
    if earlier is None:
        return False
    left = zoned_parts(earlier, zone_name)
    right = zoned_parts(current, zone_name)
    return (left.year, left.month, left.day) == (right.year, right.month, right.day)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat_utc(value: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string with millisecond precision."""
    rendered = to_utc(value).isoformat(timespec="milliseconds")
    return rendered.replace("+00:00", "Z")


def format_iso_date(value: datetime | date) -> str:
    """Return YYYY-MM-DD for a date or the UTC date of a datetime."""
    if isinstance(value, datetime):
        value = to_utc(value).date()
    return value.isoformat()


def format_year_month(value: datetime | date) -> str:
    """Return YYYY-MM for a date or datetime."""
    return format_iso_date(value)[:7]


def week_key(value: datetime | date | None = None) -> str:
    """Return the YYYY-Www key used to group weekly review prompts.

    Week 1 starts on the first Sunday on or after January 1st, so days
    before it map to week 00.
    """
    if value is None:
        value = utc_now()
    if isinstance(value, datetime):
        moment = to_utc(value).replace(tzinfo=None)
    else:
        moment = datetime.combine(value, time.min)
    first_day = date(moment.year, 1, 1)
    day_offset = _sunday_based_weekday(first_day) or 7
    week_start = datetime.combine(first_day + timedelta(days=7 - day_offset), time.min)
    diff_days = (moment - week_start).total_seconds() / 86400
    week_number = math.ceil((diff_days + 1) / 7)
    return f"{moment.year}-W{week_number:02d}"


def week_label(value: datetime | date) -> str:
    """Return a Monday to Sunday range label for the week containing the value."""
    day = value.date() if isinstance(value, datetime) else value
    start = day - timedelta(days=day.weekday())
    end = start + timedelta(days=6)
    return f"{start.isoformat()} - {end.isoformat()}"


def _sunday_based_weekday(value: date) -> int:
    """Return the weekday with Sunday as 0."""
    return (value.weekday() + 1) % 7
