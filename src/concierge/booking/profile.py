"""Client profile helpers: input validation, attendee parsing and description text.

The description is a display rendering of :class:`ClientProfile`. Reading it
back (:func:`extract_profile_from_description`) exists only for appointments
that were created before the typed record was stored alongside them.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from concierge.booking.errors import ValidationError
from concierge.booking.models import (
    DEFAULT_CLIENT_NAME,
    DEFAULT_CLIENT_PHONE,
    Appointment,
    ClientProfile,
    MeetingType,
)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_STRIP = re.compile(r"[\s\-()]")
_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")

_LABELED_LINE = {
    "name": re.compile(r"Name:\s*([^\n\r]+)", re.IGNORECASE),
    "email": re.compile(r"Email:\s*([^\n\r]+)", re.IGNORECASE),
    "phone": re.compile(r"Phone:\s*([^\n\r]+)", re.IGNORECASE),
    "meeting_type": re.compile(r"Type:\s*(\w+)", re.IGNORECASE),
}

# Calendar-owned addresses that are never the client.
_SYSTEM_EMAIL_SUFFIX = "calendar.google.com"


def validate_email(value: str) -> str:
    email = value.strip()
    if not _EMAIL_PATTERN.match(email):
        raise ValidationError(
            f"Invalid email address: {value!r}",
            guidance="Provide a full address such as name@example.com.",
        )
    return email


def validate_phone(value: str) -> str:
    """Digits with an optional leading ``+``; spaces, dashes and parentheses are ignored."""
    if not _PHONE_PATTERN.match(_PHONE_STRIP.sub("", value)):
        raise ValidationError(
            f"Invalid phone number: {value!r}",
            guidance="Use digits with an optional leading '+', e.g. +91 98765 43210.",
        )
    return value.strip()


def parse_attendees(raw: Any) -> list[str]:
    """Normalize additional attendees to a list of email strings.

    Accepts a list (of strings or ``{"email": ...}`` mappings), a JSON array
    string, or a comma-separated string of addresses.
    """
    if not raw:
        return []
    if isinstance(raw, list | tuple):
        emails: list[str] = []
        for item in raw:
            if isinstance(item, str):
                emails.append(item.strip())
            elif isinstance(item, dict) and item.get("email"):
                emails.append(str(item["email"]).strip())
        return [e for e in emails if e]
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return [part.strip() for part in raw.split(",") if "@" in part]
        if isinstance(decoded, str):
            return [decoded.strip()] if "@" in decoded else []
        return parse_attendees(decoded)
    return []


def dedupe_emails(emails: Iterable[str]) -> list[str]:
    """Case-insensitive de-duplication preserving first occurrence order."""
    seen: set[str] = set()
    result: list[str] = []
    for email in emails:
        key = email.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(email.strip())
    return result


def render_description(
    profile: ClientProfile,
    *,
    duration: timedelta,
    created_at: datetime,
) -> str:
    """Human-readable description stored with the appointment."""
    lines = [
        "Client Information:",
        f"Name: {profile.name}",
        f"Email: {profile.email or 'Not provided'}",
        f"Phone: {profile.phone}",
        "",
        "Appointment Details:",
        f"Type: {profile.meeting_type.label}",
        f"Duration: {int(duration.total_seconds() // 60)} minutes",
    ]
    if profile.notes:
        lines += ["", "Additional Notes:", profile.notes]
    if profile.rescheduled_from:
        lines += ["", f"Originally: {profile.rescheduled_from}"]
        lines.append(f"Rescheduled on: {created_at:%Y-%m-%d %H:%M}")
    else:
        lines += ["", f"Scheduled on: {created_at:%Y-%m-%d %H:%M}"]
    return "\n".join(lines)


def extract_profile_from_description(description: str | None) -> ClientProfile | None:
    """Recover a profile from labeled ``Name:``/``Email:``/``Phone:``/``Type:`` lines."""
    if not description:
        return None
    found: dict[str, str] = {}
    for field_name, pattern in _LABELED_LINE.items():
        match = pattern.search(description)
        if match:
            found[field_name] = match.group(1).strip()
    if not found:
        return None
    email = found.get("email")
    if email and not _EMAIL_PATTERN.match(email):
        email = None
    meeting = found.get("meeting_type", "").lower()
    return ClientProfile(
        name=found.get("name") or DEFAULT_CLIENT_NAME,
        email=email,
        phone=found.get("phone") or DEFAULT_CLIENT_PHONE,
        meeting_type=MeetingType(meeting) if meeting in MeetingType else MeetingType.ONLINE,
    )


def split_title(title: str) -> tuple[str, str | None]:
    """Split ``"{summary} - {name}"`` into its two parts."""
    if " - " not in title:
        return title, None
    base, _, name = title.rpartition(" - ")
    return base.strip(), name.strip() or None


def client_attendee(appointment: Appointment) -> str | None:
    """First attendee that is neither the organizer nor a calendar system address."""
    for attendee in appointment.attendees:
        if attendee.organizer:
            continue
        if attendee.email.lower().endswith(_SYSTEM_EMAIL_SUFFIX):
            continue
        if appointment.organizer and attendee.email.lower() == appointment.organizer.lower():
            continue
        return attendee.email
    return None


def resolve_profile(appointment: Appointment) -> ClientProfile:
    """Best available client profile for an existing appointment.

    Precedence: typed record, labeled description lines, then the attendee
    list and the title suffix for whatever is still missing.
    """
    profile = appointment.client or extract_profile_from_description(appointment.description)
    if profile is None:
        profile = ClientProfile()
    updates: dict[str, Any] = {}
    if not profile.email:
        email = client_attendee(appointment)
        if email:
            updates["email"] = email
    if profile.name == DEFAULT_CLIENT_NAME:
        _, name = split_title(appointment.title)
        if name:
            updates["name"] = name
    return profile.model_copy(update=updates) if updates else profile
