"""Appointments module: booking tools and the reminder scheduler.

Depends on the calendar module for the provider and the email module for the
notifier; the daemon wires both in before :meth:`AppointmentsModule.on_startup`.

Every tool returns ``{"status": ..., "text": ..., ...}``. Booking errors are
converted into structured payloads; anything else propagates to FastMCP.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from itertools import pairwise
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from concierge.booking import rendering
from concierge.booking.availability import BookingPolicy, SlotStepPolicy
from concierge.booking.coordinator import (
    AppointmentCoordinator,
    CreateRequest,
    RescheduleRequest,
)
from concierge.booking.dates import format_display_date, format_display_time
from concierge.booking.errors import (
    AmbiguousMatchError,
    BookingError,
    NotFoundError,
    PartialFailureError,
    RescheduleAbortedError,
    UpstreamError,
)
from concierge.booking.models import (
    DEFAULT_WORKING_WINDOWS,
    Appointment,
    SearchCriteria,
    WorkingWindow,
)
from concierge.booking.notifications import Branding
from concierge.booking.reminders import (
    InMemoryMarkerStore,
    MarkerStore,
    ReminderConfig,
    ReminderScheduler,
    StateMarkerStore,
)
from concierge.booking.timezone import DEFAULT_UTC_OFFSET, format_offset, to_display_form
from concierge.modules.base import Module
from concierge.modules.calendar import CalendarConfig, CalendarProvider
from concierge.modules.email import Notifier

logger = logging.getLogger(__name__)


class AppointmentsConfig(BaseModel):
    """Booking policy and reminder settings (``[modules.appointments]``)."""

    model_config = ConfigDict(extra="forbid")

    duration_minutes: int = Field(default=45, ge=5)
    buffer_minutes: int = Field(default=15, ge=0)
    step_policy: SlotStepPolicy = SlotStepPolicy.BLOCK
    fixed_step_minutes: int = Field(default=30, ge=5)
    working_windows: list[WorkingWindow] = Field(
        default_factory=lambda: list(DEFAULT_WORKING_WINDOWS)
    )
    search_horizon_days: int = Field(default=30, ge=1)
    display_cap: int = Field(default=5, ge=1)
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)

    @field_validator("working_windows")
    @classmethod
    def _require_disjoint_windows(cls, value: list[WorkingWindow]) -> list[WorkingWindow]:
        if not value:
            raise ValueError("working_windows must contain at least one window")
        labels = [w.label for w in value]
        if len(set(labels)) != len(labels):
            raise ValueError(f"working window labels must be unique, got {labels}")
        ordered = sorted(value, key=lambda w: w.start)
        for earlier, later in pairwise(ordered):
            if later.start < earlier.end:
                raise ValueError(
                    f"working windows '{earlier.label}' and '{later.label}' overlap"
                )
        return ordered

    @property
    def policy(self) -> BookingPolicy:
        return BookingPolicy(
            duration=timedelta(minutes=self.duration_minutes),
            buffer=timedelta(minutes=self.buffer_minutes),
            windows=tuple(self.working_windows),
            step_policy=self.step_policy,
            fixed_step=timedelta(minutes=self.fixed_step_minutes),
        )


def appointment_payload(appointment: Appointment, *, offset: timedelta) -> dict[str, Any]:
    """JSON-friendly view of an appointment with local display times."""
    payload = appointment.model_dump(mode="json", exclude={"description"})
    if not appointment.all_day:
        start = to_display_form(appointment.start_at, offset=offset)
        payload["local_date"] = start.date().isoformat()
        payload["local_time"] = format_display_time(start)
    return payload


def error_payload(exc: BookingError, *, offset: timedelta) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "status": exc.status,
        "text": rendering.render_error(exc, offset=offset),
        "error": exc.message,
    }
    if exc.guidance:
        payload["guidance"] = exc.guidance
    if isinstance(exc, UpstreamError):
        payload["error_kind"] = exc.kind.value
        if exc.status_code is not None:
            payload["status_code"] = exc.status_code
    elif isinstance(exc, AmbiguousMatchError):
        payload["total"] = exc.total
        payload["candidates"] = [
            appointment_payload(appt, offset=offset) for appt in exc.candidates
        ]
    elif isinstance(exc, NotFoundError):
        payload["criteria"] = exc.criteria
    elif isinstance(exc, PartialFailureError):
        payload["original"] = appointment_payload(exc.original, offset=offset)
        payload["replacement"] = appointment_payload(exc.replacement, offset=offset)
        payload["compensated"] = exc.compensated
    elif isinstance(exc, RescheduleAbortedError):
        payload["original"] = appointment_payload(exc.original, offset=offset)
    return payload


def _invalid_input_payload(exc: PydanticValidationError) -> dict[str, Any]:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
        for err in exc.errors()
    )
    return {
        "status": "validation_error",
        "text": f"Invalid input: {problems}",
        "error": problems,
    }


class AppointmentsModule(Module):
    """Booking operations over the shared calendar provider and notifier."""

    def __init__(self) -> None:
        self._config: AppointmentsConfig = AppointmentsConfig()
        self._provider: CalendarProvider | None = None
        self._calendar_config: CalendarConfig | None = None
        self._notifier: Notifier | None = None
        self._branding: Branding = Branding()
        self._coordinator: AppointmentCoordinator | None = None
        self._scheduler: ReminderScheduler | None = None
        self._background_tasks = True

    @property
    def name(self) -> str:
        return "appointments"

    @property
    def config_schema(self) -> type[BaseModel]:
        return AppointmentsConfig

    @property
    def dependencies(self) -> list[str]:
        return ["calendar", "email"]

    @property
    def coordinator(self) -> AppointmentCoordinator | None:
        return self._coordinator

    @property
    def scheduler(self) -> ReminderScheduler | None:
        return self._scheduler

    # -- wiring --------------------------------------------------------------

    def set_calendar_provider(
        self, provider: CalendarProvider, calendar_config: CalendarConfig
    ) -> None:
        self._provider = provider
        self._calendar_config = calendar_config

    def set_notifier(self, notifier: Notifier, branding: Branding | None = None) -> None:
        self._notifier = notifier
        if branding is not None:
            self._branding = branding

    def set_background_tasks(self, enabled: bool) -> None:
        """Whether on_startup launches the reminder loop (off for one-shot runs)."""
        self._background_tasks = enabled

    @staticmethod
    def _coerce_config(config: Any) -> AppointmentsConfig:
        if isinstance(config, AppointmentsConfig):
            return config
        return AppointmentsConfig(**(config or {}))

    @property
    def _offset(self) -> timedelta:
        if self._calendar_config is None:
            return DEFAULT_UTC_OFFSET
        return self._calendar_config.utc_offset

    # -- lifecycle -----------------------------------------------------------

    async def on_startup(self, config: Any, db: Any) -> None:
        self._config = self._coerce_config(config)
        if self._provider is None or self._calendar_config is None:
            raise RuntimeError("Appointments module requires a calendar provider")
        if self._notifier is None:
            raise RuntimeError("Appointments module requires a notifier")

        calendar = self._calendar_config
        self._coordinator = AppointmentCoordinator(
            self._provider,
            self._notifier,
            self._config.policy,
            calendar_id=calendar.calendar_id,
            offset=calendar.utc_offset,
            timezone_name=calendar.timezone,
            branding=self._branding,
            search_horizon=timedelta(days=self._config.search_horizon_days),
            display_cap=self._config.display_cap,
        )

        pool = getattr(db, "pool", None) if db is not None else None
        store: MarkerStore
        if pool is not None:
            store = StateMarkerStore(pool)
        else:
            logger.warning("No database configured; reminder markers are kept in memory")
            store = InMemoryMarkerStore()

        self._scheduler = ReminderScheduler(
            self._provider,
            self._notifier,
            store,
            self._config.reminders,
            calendar_id=calendar.calendar_id,
            offset=calendar.utc_offset,
            branding=self._branding,
        )
        if self._config.reminders.enabled and self._background_tasks:
            self._scheduler.start()

    async def on_shutdown(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
        self._scheduler = None
        self._coordinator = None

    def _require_coordinator(self) -> AppointmentCoordinator:
        if self._coordinator is None:
            raise RuntimeError("Appointments module is not started")
        return self._coordinator

    def _require_scheduler(self) -> ReminderScheduler:
        if self._scheduler is None:
            raise RuntimeError("Appointments module is not started")
        return self._scheduler

    async def _guarded(
        self, operation: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any]:
        try:
            return await operation()
        except BookingError as exc:
            logger.info("Booking operation failed (%s): %s", exc.status, exc.message)
            return error_payload(exc, offset=self._offset)
        except PydanticValidationError as exc:
            return _invalid_input_payload(exc)

    # -- tools ---------------------------------------------------------------

    async def register_tools(self, mcp: Any, config: Any, db: Any) -> None:
        self._config = self._coerce_config(config)
        module = self  # capture for closures

        @mcp.tool()
        async def appointments_get_schedule(date: str = "today") -> dict[str, Any]:
            """List the appointments on a date (YYYY-MM-DD or 'today', 'tomorrow', ...)."""

            async def run() -> dict[str, Any]:
                result = await module._require_coordinator().get_schedule(date)
                offset = module._offset
                return {
                    "status": "ok",
                    "text": rendering.render_schedule(result, offset=offset),
                    "date": result.day.isoformat(),
                    "appointments": [
                        appointment_payload(a, offset=offset) for a in result.appointments
                    ],
                }

            return await module._guarded(run)

        @mcp.tool()
        async def appointments_recommend_slots(date: str) -> dict[str, Any]:
            """Recommend free slots on a date, grouped by morning and afternoon."""

            async def run() -> dict[str, Any]:
                result = await module._require_coordinator().recommend_slots(date)
                return {
                    "status": "ok",
                    "text": rendering.render_slots(result),
                    "date": result.day.isoformat(),
                    "slots": {
                        label: [
                            {
                                "start": format_display_time(slot.start),
                                "end": format_display_time(slot.end),
                            }
                            for slot in slots
                        ]
                        for label, slots in result.slots.items()
                    },
                    "total": result.total,
                }

            return await module._guarded(run)

        @mcp.tool()
        async def appointments_schedule(
            summary: str,
            date: str,
            time: str,
            name: str,
            email: str,
            phone: str,
            meeting_type: str = "online",
            notes: str | None = None,
            additional_attendees: list[str] | str | None = None,
            check_availability: bool = True,
            send_reminder: bool = True,
            require_confirmation: bool = True,
        ) -> dict[str, Any]:
            """Book a new appointment and email the client a confirmation.

            The time is 24-hour HH:MM local time. With check_availability the
            booking is refused if the slot (plus buffer) overlaps anything.
            """

            async def run() -> dict[str, Any]:
                request = CreateRequest(
                    summary=summary,
                    date=date,
                    time=time,
                    name=name,
                    email=email,
                    phone=phone,
                    meeting_type=meeting_type.strip().lower(),
                    notes=notes,
                    additional_attendees=additional_attendees,
                    check_availability=check_availability,
                    send_reminder=send_reminder,
                    require_confirmation=require_confirmation,
                )
                result = await module._require_coordinator().create(request)
                return {
                    "status": "ok",
                    "text": rendering.render_created(result),
                    "appointment": appointment_payload(
                        result.appointment, offset=module._offset
                    ),
                    "attendees": result.attendees,
                    "requires_confirmation": result.requires_confirmation,
                    "notification_sent": result.notification_sent,
                }

            return await module._guarded(run)

        @mcp.tool()
        async def appointments_cancel(
            title: str | None = None,
            date: str | None = None,
            name: str | None = None,
            email: str | None = None,
            phone: str | None = None,
            exact_match: bool = False,
        ) -> dict[str, Any]:
            """Cancel one appointment found by title, date, name, email or phone."""

            async def run() -> dict[str, Any]:
                criteria = SearchCriteria(
                    title=title,
                    date=date,
                    name=name,
                    email=email,
                    phone=phone,
                    exact_match=exact_match,
                )
                result = await module._require_coordinator().cancel(criteria)
                return {
                    "status": "ok",
                    "text": rendering.render_cancelled(result),
                    "appointment": appointment_payload(
                        result.appointment, offset=module._offset
                    ),
                    "client": result.profile.model_dump(mode="json"),
                    "notification_sent": result.notification_sent,
                }

            return await module._guarded(run)

        @mcp.tool()
        async def appointments_reschedule(
            new_date: str,
            new_time: str,
            title: str | None = None,
            date: str | None = None,
            name: str | None = None,
            email: str | None = None,
            phone: str | None = None,
            exact_match: bool = False,
            new_title: str | None = None,
            new_name: str | None = None,
            new_email: str | None = None,
            new_phone: str | None = None,
            meeting_type: str | None = None,
            notes: str | None = None,
            check_availability: bool = True,
            send_reminder: bool = True,
            force_proceed: bool = True,
        ) -> dict[str, Any]:
            """Move an appointment to a new date and time.

            The replacement is created before the original is removed. If the
            original cannot be removed, force_proceed keeps both and reports a
            partial failure; otherwise the replacement is rolled back.
            """

            async def run() -> dict[str, Any]:
                request = RescheduleRequest(
                    criteria=SearchCriteria(
                        title=title,
                        date=date,
                        name=name,
                        email=email,
                        phone=phone,
                        exact_match=exact_match,
                    ),
                    new_date=new_date,
                    new_time=new_time,
                    new_title=new_title,
                    name=new_name,
                    email=new_email,
                    phone=new_phone,
                    meeting_type=meeting_type.strip().lower() if meeting_type else None,
                    notes=notes,
                    check_availability=check_availability,
                    send_reminder=send_reminder,
                    force_proceed=force_proceed,
                )
                result = await module._require_coordinator().reschedule(request)
                offset = module._offset
                return {
                    "status": "ok",
                    "text": rendering.render_rescheduled(result),
                    "state": result.state.value,
                    "original": appointment_payload(result.original, offset=offset),
                    "replacement": appointment_payload(result.replacement, offset=offset),
                    "client": result.profile.model_dump(mode="json"),
                    "notification_sent": result.notification_sent,
                }

            return await module._guarded(run)

        @mcp.tool()
        async def appointments_list_for_user(
            name: str | None = None,
            email: str | None = None,
            phone: str | None = None,
        ) -> dict[str, Any]:
            """List every upcoming appointment for a client (next 30 days by default)."""

            async def run() -> dict[str, Any]:
                result = await module._require_coordinator().list_user_appointments(
                    name=name, email=email, phone=phone
                )
                offset = module._offset
                return {
                    "status": "ok",
                    "text": rendering.render_user_appointments(result, offset=offset),
                    "count": len(result.appointments),
                    "appointments": [
                        appointment_payload(a, offset=offset) for a in result.appointments
                    ],
                }

            return await module._guarded(run)

        @mcp.tool()
        async def appointments_current_date() -> dict[str, Any]:
            """Current local date and time, for resolving relative dates."""
            coordinator = module._require_coordinator()
            now = coordinator.now()
            local = coordinator.local(now)
            offset_text = format_offset(coordinator.offset)
            return {
                "status": "ok",
                "text": (
                    f"Today is {format_display_date(local.date())}, "
                    f"{format_display_time(local)} local time (UTC{offset_text})."
                ),
                "local_date": local.date().isoformat(),
                "local_time": format_display_time(local),
                "utc": now.isoformat(),
                "utc_offset": offset_text,
                "timezone": (
                    module._calendar_config.timezone if module._calendar_config else None
                ),
            }

        @mcp.tool()
        async def appointments_reminder_status() -> dict[str, Any]:
            """Reminder scheduler state and the number of stored markers."""
            status = await module._require_scheduler().status()
            state = "running" if status["running"] else "stopped"
            return {
                "status": "ok",
                "text": f"Reminder scheduler {state}; {status['markers']} marker(s) stored.",
                **status,
            }

        @mcp.tool()
        async def appointments_run_reminders() -> dict[str, Any]:
            """Run one reminder cycle now."""
            report = await module._require_scheduler().run_cycle()
            if report.skipped:
                text = "A reminder scan is already running; nothing to do."
            else:
                text = (
                    f"Scanned {report.scanned} appointment(s); sent "
                    f"{len(report.dispatched)} reminder(s)."
                )
            return {"status": "ok", "text": text, "report": report.model_dump(mode="json")}
