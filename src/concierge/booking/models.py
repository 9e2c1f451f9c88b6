"""Typed records shared by the booking engine, the providers and the tools."""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Key prefix for the typed client record inside provider private properties.
CLIENT_PROPERTY_PREFIX = "client_"

DEFAULT_CLIENT_NAME = "Unknown User"
DEFAULT_CLIENT_PHONE = "Not provided"


class MeetingType(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"

    @property
    def label(self) -> str:
        return "Online Meeting" if self is MeetingType.ONLINE else "Offline Meeting"


class AppointmentStatus(StrEnum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class AttendeeResponse(StrEnum):
    NEEDS_ACTION = "needsAction"
    DECLINED = "declined"
    TENTATIVE = "tentative"
    ACCEPTED = "accepted"


class Attendee(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    response_status: AttendeeResponse = AttendeeResponse.NEEDS_ACTION
    organizer: bool = False


class ClientProfile(BaseModel):
    """Structured client metadata attached to every system-created appointment.

    The profile is the source of truth. The description text is rendered from
    it for humans and is never parsed when a typed record is present.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = DEFAULT_CLIENT_NAME
    email: str | None = None
    phone: str = DEFAULT_CLIENT_PHONE
    meeting_type: MeetingType = MeetingType.ONLINE
    notes: str | None = None
    rescheduled_from: str | None = None

    def to_private_properties(self) -> dict[str, str]:
        """Flatten into string key/values for provider private properties."""
        props: dict[str, str] = {}
        for key, value in self.model_dump(mode="json").items():
            if value is not None:
                props[f"{CLIENT_PROPERTY_PREFIX}{key}"] = str(value)
        return props

    @classmethod
    def from_private_properties(cls, props: dict[str, Any] | None) -> ClientProfile | None:
        """Rebuild a profile from private properties; ``None`` if none stored."""
        if not props:
            return None
        fields = {
            key[len(CLIENT_PROPERTY_PREFIX) :]: value
            for key, value in props.items()
            if key.startswith(CLIENT_PROPERTY_PREFIX)
        }
        fields = {k: v for k, v in fields.items() if k in cls.model_fields}
        if not fields:
            return None
        return cls.model_validate(fields)

    def search_text(self) -> str:
        """Flattened text used by the matcher's identity predicate."""
        parts = [self.name, self.email or "", self.phone, self.notes or ""]
        return "\n".join(p for p in parts if p)


class Appointment(BaseModel):
    """An appointment as read back from the calendar store."""

    model_config = ConfigDict(extra="forbid")

    appointment_id: str
    title: str = ""
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    description: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    organizer: str | None = None
    client: ClientProfile | None = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    html_link: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _validate_window(self) -> Appointment:
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self

    @property
    def attendee_emails(self) -> list[str]:
        return [a.email for a in self.attendees]

    @property
    def is_cancelled(self) -> bool:
        return self.status is AppointmentStatus.CANCELLED


class ReminderOverride(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    method: str
    minutes: int


DEFAULT_REMINDER_OVERRIDES = (
    ReminderOverride(method="email", minutes=24 * 60),
    ReminderOverride(method="popup", minutes=30),
)


class AppointmentDraft(BaseModel):
    """Everything a provider needs to create one appointment."""

    model_config = ConfigDict(extra="forbid")

    title: str
    start_at: datetime
    end_at: datetime
    attendees: list[str] = Field(default_factory=list)
    client: ClientProfile
    description: str
    reminder_overrides: list[ReminderOverride] | None = None
    timezone_name: str = "UTC"

    @model_validator(mode="after")
    def _validate_window(self) -> AppointmentDraft:
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class WorkingWindow(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    label: str
    start: time
    end: time

    @model_validator(mode="after")
    def _validate_order(self) -> WorkingWindow:
        if self.end <= self.start:
            raise ValueError(f"working window '{self.label}' must end after it starts")
        return self


DEFAULT_WORKING_WINDOWS = (
    WorkingWindow(label="morning", start=time(9, 0), end=time(12, 0)),
    WorkingWindow(label="afternoon", start=time(14, 0), end=time(17, 0)),
)


class Slot(BaseModel):
    """A free candidate interval, as local wall-clock times."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    label: str

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class SearchCriteria(BaseModel):
    """Free-text criteria used to resolve one existing appointment."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    date: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    exact_match: bool = False

    @field_validator("title", "date", "name", "email", "phone", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip()
        return value

    @property
    def has_identity(self) -> bool:
        return any((self.name, self.email, self.phone))

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.date or self.has_identity)

    def describe(self) -> dict[str, str]:
        return {
            k: v
            for k, v in self.model_dump(exclude={"exact_match"}).items()
            if v is not None
        }


class ReminderMarker(BaseModel):
    """Durable proof that one reminder interval fired for one appointment."""

    model_config = ConfigDict(extra="forbid")

    appointment_id: str
    interval_minutes: int
    sent: bool = True
    sent_at: datetime
    appointment_start: datetime

    def key(self) -> str:
        return marker_key(self.appointment_id, self.interval_minutes)


def marker_key(appointment_id: str, interval_minutes: int) -> str:
    return f"reminder::{appointment_id}::{interval_minutes}"

