"""Unit tests for timezone and calendar key helpers."""

from __future__ import annotations

from datetime import date, datetime, timezone

from time_utils import (
    format_iso_date,
    is_same_day_in_zone,
    isoformat_utc,
    parse_timestamp,
    resolve_zone,
    to_utc,
    week_key,
    week_label,
    zoned_parts,
)


def test_to_utc_treats_naive_as_utc() -> None:
    """Naive datetimes are assumed to already be UTC."""
    converted = to_utc(datetime(2025, 1, 15, 12, 0, 0))

    assert converted.tzinfo == timezone.utc
    assert converted.hour == 12


def test_zoned_parts_use_sunday_based_weekday() -> None:
    """Zoned parts shift to local time and count weekdays from Sunday."""
    parts = zoned_parts(datetime(2025, 3, 16, 2, 0, tzinfo=timezone.utc), "America/New_York")

    # 2025-03-15 22:00 EDT is a Saturday.
    assert (parts.day, parts.hour, parts.weekday) == (15, 22, 6)


def test_unknown_zone_falls_back_to_utc() -> None:
    """Unknown timezone names resolve to UTC."""
    assert resolve_zone("Mars/Olympus").key == "UTC"
    assert resolve_zone(None).key == "UTC"


def test_same_day_respects_zone() -> None:
    """Two instants on different UTC days can share a local day."""
    late = datetime(2025, 3, 13, 2, 0, tzinfo=timezone.utc)

    assert is_same_day_in_zone("2025-03-12T15:00:00Z", late, "America/Los_Angeles")
    assert not is_same_day_in_zone("2025-03-12T15:00:00Z", late, "UTC")
    assert not is_same_day_in_zone(None, late, "UTC")
    assert not is_same_day_in_zone("not a date", late, "UTC")


def test_timestamp_round_trip_format() -> None:
    """Timestamps render with milliseconds and a Z suffix."""
    moment = datetime(2025, 3, 12, 9, 30, tzinfo=timezone.utc)

    assert isoformat_utc(moment) == "2025-03-12T09:30:00.000Z"
    assert parse_timestamp("2025-03-12T09:30:00.000Z") == moment
    assert parse_timestamp("") is None


def test_week_key_and_label() -> None:
    """Weeks before the first boundary are week 00; labels run Monday to Sunday."""
    assert week_key(date(2025, 1, 1)) == "2025-W00"
    assert week_key(datetime(2025, 1, 6, tzinfo=timezone.utc)) == "2025-W01"
    assert week_label(date(2025, 3, 12)) == "2025-03-10 - 2025-03-16"
    assert format_iso_date(datetime(2025, 3, 12, 23, 0, tzinfo=timezone.utc)) == "2025-03-12"
