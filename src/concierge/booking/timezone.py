"""Conversion between local wall-clock times and calendar store instants.

The deployment runs on one fixed UTC offset. Writes go to the calendar as a
zone-less wall-clock string plus a zone name; reads come back as RFC 3339
instants and are shifted to naive local wall-clock values for display.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta

DEFAULT_UTC_OFFSET = timedelta(hours=5, minutes=30)
DEFAULT_TIMEZONE_NAME = "Asia/Kolkata"

_STORE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def parse_instant(value: str | datetime) -> datetime:
    """Parse an RFC 3339 string (``Z`` accepted); naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def to_instant(wall: datetime, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> datetime:
    """Interpret a naive local wall-clock time as an aware UTC instant."""
    if wall.tzinfo is not None:
        return wall.astimezone(UTC)
    return (wall - offset).replace(tzinfo=UTC)


def to_store_form(value: datetime, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    """Serialize a time for a calendar write.

    Naive input is a local wall clock and is written as-is. Aware input is
    moved to UTC and then shifted by the offset. Either way the result has no
    zone suffix; the zone name travels in a separate field.
    """
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None) + offset
    return value.strftime(_STORE_FORMAT)


def to_display_form(
    value: str | datetime, *, offset: timedelta = DEFAULT_UTC_OFFSET
) -> datetime:
    """Return the naive local wall clock for a stored instant.

    A naive datetime is already a local wall clock and is returned unchanged.
    """
    if isinstance(value, datetime) and value.tzinfo is None:
        return value
    instant = parse_instant(value)
    return instant.astimezone(UTC).replace(tzinfo=None) + offset


def local_now(now: datetime, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> datetime:
    return to_display_form(now, offset=offset)


def local_today(now: datetime, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> date:
    """The calendar date at the deployment offset for the instant *now*."""
    return local_now(now, offset=offset).date()


def day_bounds(
    day: date, *, offset: timedelta = DEFAULT_UTC_OFFSET
) -> tuple[datetime, datetime]:
    """UTC instants for local ``00:00:00`` and ``23:59:59`` of *day*."""
    start = datetime.combine(day, time(0, 0, 0))
    end = datetime.combine(day, time(23, 59, 59))
    return to_instant(start, offset=offset), to_instant(end, offset=offset)


def format_offset(offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    """Render an offset as ``+05:30``."""
    total = int(offset.total_seconds() // 60)
    sign = "+" if total >= 0 else "-"
    hours, minutes = divmod(abs(total), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"
