from __future__ import annotations

from datetime import date, datetime, time
from zoneinfo import ZoneInfo

MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str) -> int:
    """Minutes since midnight for an ``HH:MM`` string."""

    parts = value.strip().split(":")
    if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
        raise ValueError(f"invalid_time:{value}")
    hours, minutes = int(parts[0]), int(parts[1])
    if hours > 23 or minutes > 59:
        raise ValueError(f"invalid_time:{value}")
    return hours * 60 + minutes


def format_minutes(total: int) -> str:
    total %= MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def normalize_hhmm(value: str) -> str:
    return format_minutes(parse_hhmm(value))


def add_minutes(value: str, minutes: int) -> str:
    return format_minutes(parse_hhmm(value) + minutes)


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def normalize_dispatch_date(value: date | datetime | str, tz_name: str) -> date:
    """Calendar date key in the organization's time zone.

    Plain dates pass through; datetimes (naive ones are treated as UTC) are
    converted to ``tz_name`` before taking the date.
    """

    if isinstance(value, str):
        raw = value.strip()
        if len(raw) == 10:
            return date.fromisoformat(raw)
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=ZoneInfo("UTC"))
        return value.astimezone(ZoneInfo(tz_name)).date()
    return value
