"""Calendar module: provider abstraction and the Google Calendar implementation.

The booking engine talks to the calendar only through :class:`CalendarProvider`.
Appointments are written with a zone-less local wall-clock time plus a zone
name, and carry the typed client record in the event's private extended
properties.
"""

from __future__ import annotations

import abc
import itertools
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from concierge.booking.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    Attendee,
    AttendeeResponse,
    ClientProfile,
)
from concierge.booking.timezone import DEFAULT_TIMEZONE_NAME, parse_instant, to_store_form
from concierge.google_credentials import (
    AccessTokenSource,
    GoogleAuthError,
    GoogleCredentials,
    GoogleOAuthClient,
    redact_credential_values,
    safe_google_error_message,
    validate_env_var_name,
)
from concierge.modules.base import Module

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GENERATED_PRIVATE_KEY = "concierge_generated"
MAX_LIST_RESULTS = 250


class CalendarAuthError(RuntimeError):
    """Base error raised by calendar auth/request helpers."""


class CalendarCredentialError(CalendarAuthError):
    """Raised when credentials are missing or an access token cannot be obtained."""


class CalendarRequestError(CalendarAuthError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def build_structured_error(exc: Exception, *, provider: str, calendar_id: str) -> dict[str, Any]:
    """Structured error dict with credential values redacted and text truncated."""
    sanitized = " ".join(redact_credential_values(str(exc)).split())[:200]
    return {
        "status": "error",
        "error": sanitized,
        "error_type": type(exc).__name__,
        "provider": provider,
        "calendar_id": calendar_id,
    }


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


class CalendarConfig(BaseModel):
    """Configuration for the calendar module (``[modules.calendar]``)."""

    model_config = ConfigDict(extra="forbid")

    provider: str = "google"
    calendar_id: str = "primary"
    timezone: str = DEFAULT_TIMEZONE_NAME
    utc_offset_minutes: int = 330
    client_id_env: str = "GOOGLE_OAUTH_CLIENT_ID"
    client_secret_env: str = "GOOGLE_OAUTH_CLIENT_SECRET"
    refresh_token_env: str = "GOOGLE_REFRESH_TOKEN"

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must be a non-empty string")
        return normalized

    @field_validator("calendar_id", "timezone")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("utc_offset_minutes")
    @classmethod
    def _validate_offset(cls, value: int) -> int:
        if not -14 * 60 <= value <= 14 * 60:
            raise ValueError("utc_offset_minutes must be within +/-14 hours")
        return value

    @field_validator("client_id_env", "client_secret_env", "refresh_token_env")
    @classmethod
    def _validate_env_names(cls, value: str, info: ValidationInfo) -> str:
        return validate_env_var_name(value, info.field_name)

    @property
    def utc_offset(self) -> timedelta:
        return timedelta(minutes=self.utc_offset_minutes)


# ---------------------------------------------------------------------------
# Google payload translation
# ---------------------------------------------------------------------------


def _parse_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = entry.get("email")
        if not isinstance(email, str) or not email.strip():
            continue
        response_status = AttendeeResponse.NEEDS_ACTION
        raw_status = entry.get("responseStatus")
        if isinstance(raw_status, str):
            try:
                response_status = AttendeeResponse(raw_status.strip())
            except ValueError:
                pass
        attendees.append(
            Attendee(
                email=email.strip(),
                response_status=response_status,
                organizer=entry.get("organizer") is True,
            )
        )
    return attendees


def _parse_boundary(payload: Any) -> tuple[datetime, bool] | None:
    """Return ``(instant, all_day)`` for a Google start/end object."""
    if not isinstance(payload, dict):
        return None
    raw_datetime = payload.get("dateTime")
    if isinstance(raw_datetime, str) and raw_datetime.strip():
        try:
            return parse_instant(raw_datetime), False
        except ValueError:
            return None
    raw_date = payload.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        try:
            day = date.fromisoformat(raw_date.strip())
        except ValueError:
            return None
        return datetime(day.year, day.month, day.day, tzinfo=UTC), True
    return None


def google_event_to_appointment(payload: dict[str, Any]) -> Appointment | None:
    """Translate one Google event resource; ``None`` if it lacks an id or times."""
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        return None
    start = _parse_boundary(payload.get("start"))
    end = _parse_boundary(payload.get("end"))
    if start is None or end is None:
        return None

    private = (payload.get("extendedProperties") or {}).get("private")
    try:
        client = ClientProfile.from_private_properties(
            private if isinstance(private, dict) else None
        )
    except ValueError:
        logger.warning("Ignoring malformed client record on event %s", event_id)
        client = None

    organizer_payload = payload.get("organizer")
    organizer = None
    if isinstance(organizer_payload, dict) and isinstance(organizer_payload.get("email"), str):
        organizer = organizer_payload["email"].strip() or None

    status = AppointmentStatus.SCHEDULED
    if payload.get("status") == "cancelled":
        status = AppointmentStatus.CANCELLED

    description = payload.get("description")
    html_link = payload.get("htmlLink")
    return Appointment(
        appointment_id=event_id.strip(),
        title=str(payload.get("summary") or ""),
        start_at=start[0],
        end_at=end[0],
        all_day=start[1],
        description=description if isinstance(description, str) else None,
        attendees=_parse_attendees(payload.get("attendees")),
        organizer=organizer,
        client=client,
        status=status,
        html_link=html_link if isinstance(html_link, str) else None,
    )


def build_google_event_body(draft: AppointmentDraft, *, offset: timedelta) -> dict[str, Any]:
    """Google event resource for *draft*; times are local wall clock plus zone name."""
    body: dict[str, Any] = {
        "summary": draft.title,
        "description": draft.description,
        "start": {
            "dateTime": to_store_form(draft.start_at, offset=offset),
            "timeZone": draft.timezone_name,
        },
        "end": {
            "dateTime": to_store_form(draft.end_at, offset=offset),
            "timeZone": draft.timezone_name,
        },
        "attendees": [{"email": email} for email in draft.attendees],
        "extendedProperties": {
            "private": {
                GENERATED_PRIVATE_KEY: "true",
                **draft.client.to_private_properties(),
            }
        },
    }
    if draft.reminder_overrides is not None:
        body["reminders"] = {
            "useDefault": False,
            "overrides": [
                {"method": r.method, "minutes": r.minutes} for r in draft.reminder_overrides
            ],
        }
    return body


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class CalendarProvider(abc.ABC):
    """Abstract provider interface for calendar backends."""

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = 50,
    ) -> list[Appointment]:
        """Single occurrences in ``[start_at, end_at]`` ordered by start time."""

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, draft: AppointmentDraft) -> Appointment: ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an event. A missing event raises :class:`CalendarRequestError` (404)."""

    async def shutdown(self) -> None:
        return None


class GoogleCalendarProvider(CalendarProvider):
    """Google provider over the Calendar v3 REST API.

    A 401 is retried once with a forced token refresh. Every other non-2xx
    response raises :class:`CalendarRequestError`; operations are never
    retried here.
    """

    def __init__(
        self,
        config: CalendarConfig,
        token_source: AccessTokenSource | None = None,
        *,
        credentials: GoogleCredentials | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        if token_source is None:
            if credentials is None:
                raise CalendarCredentialError("Either token_source or credentials is required")
            token_source = GoogleOAuthClient(credentials, self._http_client)
        self._tokens = token_source

    @property
    def name(self) -> str:
        return "google"

    def _url(self, *segments: str) -> str:
        return GOOGLE_CALENDAR_API_BASE_URL + "".join(
            "/" + quote(segment, safe="") for segment in segments
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send with a bearer token; a 401 is retried once after a forced refresh."""
        for force_refresh in (False, True):
            try:
                token = await self._tokens.get_access_token(force_refresh=force_refresh)
            except GoogleAuthError as exc:
                raise CalendarCredentialError(str(exc)) from exc
            try:
                response = await self._http_client.request(
                    method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
            except httpx.HTTPError as exc:
                raise CalendarAuthError(f"Google Calendar request failed: {exc}") from exc
            if response.status_code != 401 or force_refresh:
                break
            logger.info("Calendar API returned 401; retrying once with a refreshed token")
        if not response.is_success:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        return response

    async def _send_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, url, **kwargs)
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError("Calendar API returned a non-JSON success body") from exc
        if not isinstance(payload, dict):
            raise CalendarAuthError("Calendar API response body is not a JSON object")
        return payload

    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = 50,
    ) -> list[Appointment]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": min(limit, MAX_LIST_RESULTS),
        }
        for key, bound in (("timeMin", start_at), ("timeMax", end_at)):
            if bound is not None:
                params[key] = _google_rfc3339(bound)

        payload = await self._send_json(
            "GET", self._url("calendars", calendar_id, "events"), params=params
        )
        items = payload.get("items")
        if not isinstance(items, list):
            raise CalendarAuthError("Calendar events listing has no 'items' array")

        parsed = (google_event_to_appointment(i) for i in items if isinstance(i, dict))
        return [appointment for appointment in parsed if appointment is not None]

    async def create_event(self, *, calendar_id: str, draft: AppointmentDraft) -> Appointment:
        body = build_google_event_body(draft, offset=self._config.utc_offset)
        payload = await self._send_json(
            "POST", self._url("calendars", calendar_id, "events"), json=body
        )
        appointment = google_event_to_appointment(payload)
        if appointment is None:
            raise CalendarAuthError("Created calendar event came back without an id or times")
        logger.info("Created calendar event %s (%s)", appointment.appointment_id, draft.title)
        return appointment

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        event_id = event_id.strip()
        if not event_id:
            raise ValueError("event_id must be a non-empty string")
        await self._send("DELETE", self._url("calendars", calendar_id, "events", event_id))
        logger.info("Deleted calendar event %s", event_id)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class InMemoryCalendarProvider(CalendarProvider):
    """Process-local calendar for development deployments without Google access."""

    def __init__(self, config: CalendarConfig | None = None) -> None:
        self._config = config or CalendarConfig(provider="memory")
        self._events: dict[str, dict[str, Appointment]] = {}
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "memory"

    def _calendar(self, calendar_id: str) -> dict[str, Appointment]:
        return self._events.setdefault(calendar_id, {})

    def add(self, appointment: Appointment, *, calendar_id: str = "primary") -> None:
        self._calendar(calendar_id)[appointment.appointment_id] = appointment

    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = 50,
    ) -> list[Appointment]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        selected = [
            appt
            for appt in self._calendar(calendar_id).values()
            if not appt.is_cancelled
            and (start_at is None or appt.end_at > start_at)
            and (end_at is None or appt.start_at < end_at)
        ]
        selected.sort(key=lambda appt: appt.start_at)
        return selected[: min(limit, MAX_LIST_RESULTS)]

    async def create_event(self, *, calendar_id: str, draft: AppointmentDraft) -> Appointment:
        offset = self._config.utc_offset
        # Round-trip through the store form so reads match what Google returns.
        start = parse_instant(to_store_form(draft.start_at, offset=offset)) - offset
        end = parse_instant(to_store_form(draft.end_at, offset=offset)) - offset
        appointment = Appointment(
            appointment_id=f"mem-{next(self._ids)}",
            title=draft.title,
            start_at=start,
            end_at=end,
            description=draft.description,
            attendees=[Attendee(email=email) for email in draft.attendees],
            client=draft.client,
        )
        self.add(appointment, calendar_id=calendar_id)
        return appointment

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        if self._calendar(calendar_id).pop(event_id, None) is None:
            raise CalendarRequestError(status_code=404, message="Not Found")


class CalendarModule(Module):
    """Owns the calendar provider and exposes it to the appointments module."""

    _PROVIDER_NAMES = ("google", "memory")

    def __init__(self) -> None:
        self._config: CalendarConfig | None = None
        self._provider: CalendarProvider | None = None

    @property
    def name(self) -> str:
        return "calendar"

    @property
    def config_schema(self) -> type[BaseModel]:
        return CalendarConfig

    @property
    def dependencies(self) -> list[str]:
        return []

    @property
    def provider(self) -> CalendarProvider | None:
        return self._provider

    @property
    def config(self) -> CalendarConfig | None:
        return self._config

    @staticmethod
    def _coerce_config(config: Any) -> CalendarConfig:
        return config if isinstance(config, CalendarConfig) else CalendarConfig(**(config or {}))

    async def register_tools(self, mcp: Any, config: Any, db: Any) -> None:
        self._config = tool_config = self._coerce_config(config)
        module = self

        @mcp.tool()
        async def calendar_list_events(days: int = 7, limit: int = 50) -> dict[str, Any]:
            """List upcoming raw calendar events for the configured calendar."""
            provider = module._require_provider()
            now = datetime.now(UTC)
            try:
                events = await provider.list_events(
                    calendar_id=tool_config.calendar_id,
                    start_at=now,
                    end_at=now + timedelta(days=max(days, 1)),
                    limit=limit,
                )
            except CalendarAuthError as exc:
                return build_structured_error(
                    exc, provider=provider.name, calendar_id=tool_config.calendar_id
                )
            return {
                "status": "ok",
                "provider": provider.name,
                "calendar_id": tool_config.calendar_id,
                "events": [event.model_dump(mode="json") for event in events],
            }

    def _require_provider(self) -> CalendarProvider:
        if self._provider is None:
            raise RuntimeError("Calendar provider is not initialized")
        return self._provider

    async def on_startup(self, config: Any, db: Any) -> None:
        self._config = self._coerce_config(config)
        if self._config.provider not in self._PROVIDER_NAMES:
            supported = ", ".join(self._PROVIDER_NAMES)
            raise RuntimeError(
                f"Unsupported calendar provider '{self._config.provider}'. "
                f"Supported providers: {supported}"
            )

        if self._config.provider == "memory":
            self._provider = InMemoryCalendarProvider(self._config)
        else:
            try:
                credentials = GoogleCredentials.from_env(
                    client_id_env=self._config.client_id_env,
                    client_secret_env=self._config.client_secret_env,
                    refresh_token_env=self._config.refresh_token_env,
                )
            except GoogleAuthError as exc:
                raise CalendarCredentialError(str(exc)) from exc
            self._provider = GoogleCalendarProvider(self._config, credentials=credentials)
        logger.info(
            "Calendar provider ready (provider=%s, calendar_id=%s, timezone=%s)",
            self._config.provider,
            self._config.calendar_id,
            self._config.timezone,
        )

    async def on_shutdown(self) -> None:
        if self._provider is not None:
            await self._provider.shutdown()
        self._provider = None
