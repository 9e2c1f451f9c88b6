"""Resolution of human date expressions to calendar dates.

``resolve_date`` always takes the reference date explicitly so that results
are deterministic; callers derive it from their clock at the deployment
offset.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Any

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from concierge.booking.errors import ParseError, ValidationError

_FORWARD_PATTERNS = (
    re.compile(r"(-?\w+)\s+days?\s+from\s+now", re.IGNORECASE),
    re.compile(r"\bin\s+(-?\w+)\s+days?", re.IGNORECASE),
    re.compile(r"(-?\w+)\s+days?\s+later", re.IGNORECASE),
    re.compile(r"\bafter\s+(-?\w+)\s+days?", re.IGNORECASE),
)

_BACKWARD_PATTERNS = (
    re.compile(r"(-?\w+)\s+days?\s+ago", re.IGNORECASE),
    re.compile(r"(-?\w+)\s+days?\s+before", re.IGNORECASE),
)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLOCK_TIME = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

_LITERAL_OFFSETS = {"today": 0, "tomorrow": 1, "yesterday": -1}

# Two distinct defaults for dateutil; fields that differ between the two
# parses were absent from the input.
_PROBE_DEFAULTS = (datetime(2000, 1, 1), datetime(2004, 2, 2))


def _day_count(raw: str, text: str) -> int:
    if not raw.lstrip("-").isdecimal() or not raw.isascii():
        raise ParseError(text, f"invalid number of days: {raw!r}")
    count = int(raw)
    if count < 0:
        raise ParseError(text, f"invalid number of days: {raw!r}")
    return count


def _shift(today: date, delta: timedelta | relativedelta, text: str) -> date:
    try:
        return today + delta
    except (OverflowError, ValueError) as exc:
        raise ParseError(text, "date out of range") from exc


def _shift_days(today: date, raw: str, text: str, *, sign: int) -> date:
    count = _day_count(raw, text)
    try:
        return today + timedelta(days=sign * count)
    except (OverflowError, ValueError) as exc:
        raise ParseError(text, "date out of range") from exc


def resolve_date(text: Any, *, today: date) -> date:
    """Resolve *text* to a calendar date relative to *today*.

    Recognised forms, first match wins: ``today``/``tomorrow``/``yesterday``;
    "N days from now", "in N days", "N days later", "after N days";
    "N days ago", "N days before"; "next week"; "next month"; strict
    ``YYYY-MM-DD``; then a generic date parse as a last resort.

    Raises:
        ParseError: the text is empty, unrecognised, or names an invalid date.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError(text, "a date is required")

    normalized = text.strip().lower()

    if normalized in _LITERAL_OFFSETS:
        return today + timedelta(days=_LITERAL_OFFSETS[normalized])

    for pattern in _FORWARD_PATTERNS:
        match = pattern.search(normalized)
        if match:
            return _shift_days(today, match.group(1), text, sign=1)

    for pattern in _BACKWARD_PATTERNS:
        match = pattern.search(normalized)
        if match:
            return _shift_days(today, match.group(1), text, sign=-1)

    if "next week" in normalized:
        return today + timedelta(days=7)

    if "next month" in normalized:
        return _shift(today, relativedelta(months=1), text)

    if _ISO_DATE.match(normalized):
        try:
            return date.fromisoformat(normalized)
        except ValueError as exc:
            raise ParseError(text, str(exc)) from exc

    return _parse_generic(text, today)


def _parse_generic(text: str, today: date) -> date:
    try:
        first, second = (date_parser.parse(text, default=d) for d in _PROBE_DEFAULTS)
    except (ValueError, OverflowError) as exc:
        raise ParseError(text) from exc
    if first.day != second.day or first.month != second.month:
        raise ParseError(text, "a day and month are required")
    if first.year != second.year:
        try:
            return first.date().replace(year=today.year)
        except ValueError as exc:
            raise ParseError(text, str(exc)) from exc
    return first.date()


def parse_clock_time(text: Any) -> time:
    """Parse ``HH:MM`` (24-hour, single-digit hour allowed)."""
    if not isinstance(text, str):
        raise ValidationError(
            f"Invalid time format: {text!r}",
            guidance="Use 24-hour HH:MM format, for example 09:30 or 14:00.",
        )
    match = _CLOCK_TIME.match(text.strip())
    if match is None:
        raise ValidationError(
            f"Invalid time format: {text!r}",
            guidance="Use 24-hour HH:MM format, for example 09:30 or 14:00.",
        )
    return time(int(match.group(1)), int(match.group(2)))


def combine_local(day: date, clock: time) -> datetime:
    """Naive local wall-clock datetime for *day* at *clock*."""
    return datetime.combine(day, clock)


def format_display_date(day: date) -> str:
    """Render like ``Thursday, 2 May 2024``."""
    return f"{day.strftime('%A')}, {day.day} {day.strftime('%B %Y')}"


def format_display_time(value: datetime | time) -> str:
    return value.strftime("%H:%M")
