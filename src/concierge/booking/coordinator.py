"""Appointment lifecycle coordinator.

Runs the create, cancel and reschedule sagas against a calendar provider and
sends best-effort client notifications. The coordinator holds no appointment
state of its own; every operation re-reads the calendar.

Provider failures are re-raised as classified :class:`UpstreamError` and are
never retried. Notification failures are logged and never fail the
operation that triggered them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from concierge.booking import notifications
from concierge.booking.availability import (
    BookingPolicy,
    busy_intervals,
    enumerate_slots,
    is_slot_available,
)
from concierge.booking.dates import (
    combine_local,
    format_display_date,
    format_display_time,
    parse_clock_time,
    resolve_date,
)
from concierge.booking.errors import (
    ConflictError,
    PartialFailureError,
    RescheduleAbortedError,
    UpstreamError,
    ValidationError,
)
from concierge.booking.matching import DEFAULT_DISPLAY_CAP, filter_matches, resolve
from concierge.booking.models import (
    DEFAULT_CLIENT_NAME,
    DEFAULT_REMINDER_OVERRIDES,
    Appointment,
    AppointmentDraft,
    ClientProfile,
    MeetingType,
    SearchCriteria,
    Slot,
)
from concierge.booking.notifications import AppointmentSummary, Branding, Notification
from concierge.booking.profile import (
    client_attendee,
    dedupe_emails,
    parse_attendees,
    render_description,
    resolve_profile,
    split_title,
    validate_email,
    validate_phone,
)
from concierge.booking.timezone import (
    DEFAULT_TIMEZONE_NAME,
    DEFAULT_UTC_OFFSET,
    day_bounds,
    local_now,
    local_today,
    to_display_form,
    to_instant,
)
from concierge.modules.calendar import CalendarAuthError

if TYPE_CHECKING:
    from concierge.modules.calendar import CalendarProvider
    from concierge.modules.email import Notifier

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_HORIZON = timedelta(days=30)
DEFAULT_LIST_LIMIT = 250

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------


class CreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str
    date: str
    time: str
    name: str
    email: str
    phone: str
    meeting_type: MeetingType = MeetingType.ONLINE
    notes: str | None = None
    additional_attendees: list[str] | str | None = None
    check_availability: bool = True
    send_reminder: bool = True
    require_confirmation: bool = True


class CreateResult(BaseModel):
    appointment: Appointment
    display_date: str
    display_time: str
    attendees: list[str]
    requires_confirmation: bool
    notification_sent: bool = False


class CancelResult(BaseModel):
    appointment: Appointment
    profile: ClientProfile
    display_date: str
    display_time: str
    notification_sent: bool = False


class RescheduleState(StrEnum):
    VALIDATING = "validating"
    RESOLVING = "resolving"
    CHECKING_AVAILABILITY = "checking_availability"
    CREATING = "creating"
    CANCELLING = "cancelling"
    DONE = "done"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


class RescheduleRequest(BaseModel):
    """Criteria locating the original plus the new slot and optional overrides."""

    model_config = ConfigDict(extra="forbid")

    criteria: SearchCriteria
    new_date: str
    new_time: str
    new_title: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    meeting_type: MeetingType | None = None
    notes: str | None = None
    check_availability: bool = True
    send_reminder: bool = True
    force_proceed: bool = True


class RescheduleResult(BaseModel):
    state: RescheduleState
    original: Appointment
    replacement: Appointment
    profile: ClientProfile
    previous_date: str
    previous_time: str
    display_date: str
    display_time: str
    transitions: list[RescheduleState] = Field(default_factory=list)
    notification_sent: bool = False


class ScheduleResult(BaseModel):
    day: date
    display_date: str
    appointments: list[Appointment]


class SlotRecommendation(BaseModel):
    day: date
    display_date: str
    slots: dict[str, list[Slot]]

    @property
    def total(self) -> int:
        return sum(len(group) for group in self.slots.values())


class UserAppointments(BaseModel):
    criteria: SearchCriteria
    appointments: list[Appointment]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class AppointmentCoordinator:
    """Entry point for every interactive booking operation."""

    def __init__(
        self,
        provider: CalendarProvider,
        notifier: Notifier | None = None,
        policy: BookingPolicy | None = None,
        *,
        calendar_id: str = "primary",
        clock: Clock | None = None,
        offset: timedelta = DEFAULT_UTC_OFFSET,
        timezone_name: str = DEFAULT_TIMEZONE_NAME,
        branding: Branding | None = None,
        search_horizon: timedelta = DEFAULT_SEARCH_HORIZON,
        display_cap: int = DEFAULT_DISPLAY_CAP,
        list_limit: int = DEFAULT_LIST_LIMIT,
    ) -> None:
        self._provider = provider
        self._notifier = notifier
        self._policy = policy or BookingPolicy()
        self._calendar_id = calendar_id
        self._clock = clock or _utc_now
        self._offset = offset
        self._timezone_name = timezone_name
        self._branding = branding or Branding()
        self._search_horizon = search_horizon
        self._display_cap = display_cap
        self._list_limit = list_limit

    @property
    def policy(self) -> BookingPolicy:
        return self._policy

    @property
    def offset(self) -> timedelta:
        return self._offset

    @property
    def display_cap(self) -> int:
        return self._display_cap

    # -- clock ---------------------------------------------------------------

    def now(self) -> datetime:
        """Current instant (UTC)."""
        return self._clock()

    def today(self) -> date:
        """Current date at the deployment offset."""
        return local_today(self.now(), offset=self._offset)

    def resolve_day(self, text: Any) -> date:
        return resolve_date(text, today=self.today())

    def local(self, instant: datetime) -> datetime:
        return to_display_form(instant, offset=self._offset)

    # -- provider calls ------------------------------------------------------

    async def _list(self, start_at: datetime, end_at: datetime) -> list[Appointment]:
        try:
            return await self._provider.list_events(
                calendar_id=self._calendar_id,
                start_at=start_at,
                end_at=end_at,
                limit=self._list_limit,
            )
        except CalendarAuthError as exc:
            raise UpstreamError.from_exception(exc) from exc

    async def _create(self, draft: AppointmentDraft) -> Appointment:
        try:
            return await self._provider.create_event(calendar_id=self._calendar_id, draft=draft)
        except CalendarAuthError as exc:
            raise UpstreamError.from_exception(exc) from exc

    async def _delete(self, appointment_id: str) -> None:
        try:
            await self._provider.delete_event(
                calendar_id=self._calendar_id, event_id=appointment_id
            )
        except CalendarAuthError as exc:
            raise UpstreamError.from_exception(exc) from exc

    async def _list_day(self, day: date) -> list[Appointment]:
        start, end = day_bounds(day, offset=self._offset)
        return await self._list(start, end)

    async def _candidates(self, criteria: SearchCriteria) -> list[Appointment]:
        """Appointments on the criteria's day, or over the forward horizon."""
        if criteria.date:
            return await self._list_day(self.resolve_day(criteria.date))
        now = self.now()
        return await self._list(now, now + self._search_horizon)

    async def _resolve_target(self, criteria: SearchCriteria) -> Appointment:
        if criteria.is_empty:
            raise ValidationError(
                "At least one search criterion is required",
                guidance="Provide a title, date, name, email or phone to identify the appointment.",
            )
        candidates = await self._candidates(criteria)
        return resolve(candidates, criteria, display_cap=self._display_cap)

    async def _ensure_available(
        self,
        day: date,
        start: datetime,
        end: datetime,
        *,
        exclude_id: str | None = None,
    ) -> None:
        busy = busy_intervals(
            await self._list_day(day), exclude_id=exclude_id, offset=self._offset
        )
        if not is_slot_available(start, end, busy, self._policy.buffer):
            raise ConflictError(
                f"The slot {format_display_date(day)} at {format_display_time(start)} "
                "is not available",
                guidance=(
                    f"Ask for recommended slots on {day.isoformat()} and pick a free time."
                ),
            )

    # -- notifications -------------------------------------------------------

    def _summary(self, appointment: Appointment, client_name: str | None) -> AppointmentSummary:
        start = self.local(appointment.start_at)
        return AppointmentSummary(
            title=appointment.title,
            date=format_display_date(start.date()),
            time=format_display_time(start),
            client_name=client_name,
        )

    async def _notify(self, recipient: str | None, notification: Notification) -> bool:
        if self._notifier is None or not recipient:
            return False
        try:
            await self._notifier.send(recipient, notification.subject, notification.body)
        except Exception:
            logger.warning(
                "Notification '%s' to %s failed", notification.subject, recipient, exc_info=True
            )
            return False
        return True

    # -- drafts --------------------------------------------------------------

    def _draft(
        self,
        *,
        title: str,
        profile: ClientProfile,
        wall_start: datetime,
        attendees: list[str],
        send_reminder: bool,
    ) -> AppointmentDraft:
        wall_end = wall_start + self._policy.duration
        return AppointmentDraft(
            title=title,
            start_at=to_instant(wall_start, offset=self._offset),
            end_at=to_instant(wall_end, offset=self._offset),
            attendees=attendees,
            client=profile,
            description=render_description(
                profile,
                duration=self._policy.duration,
                created_at=local_now(self.now(), offset=self._offset),
            ),
            reminder_overrides=list(DEFAULT_REMINDER_OVERRIDES) if send_reminder else None,
            timezone_name=self._timezone_name,
        )

    # -- operations ----------------------------------------------------------

    async def get_schedule(self, date_text: Any) -> ScheduleResult:
        day = self.resolve_day(date_text)
        appointments = [a for a in await self._list_day(day) if not a.is_cancelled]
        appointments.sort(key=lambda a: a.start_at)
        return ScheduleResult(
            day=day, display_date=format_display_date(day), appointments=appointments
        )

    async def recommend_slots(self, date_text: Any) -> SlotRecommendation:
        day = self.resolve_day(date_text)
        busy = busy_intervals(await self._list_day(day), offset=self._offset)
        grouped = enumerate_slots(day, busy, self._policy)
        if day == self.today():
            cutoff = local_now(self.now(), offset=self._offset)
            grouped = {
                label: [slot for slot in slots if slot.start >= cutoff]
                for label, slots in grouped.items()
            }
        return SlotRecommendation(day=day, display_date=format_display_date(day), slots=grouped)

    async def create(self, request: CreateRequest) -> CreateResult:
        email = validate_email(request.email)
        clock = parse_clock_time(request.time)
        phone = validate_phone(request.phone)
        extra = [validate_email(e) for e in parse_attendees(request.additional_attendees)]
        if not request.summary.strip():
            raise ValidationError("An appointment summary is required")

        day = self.resolve_day(request.date)
        wall_start = combine_local(day, clock)
        if request.check_availability:
            await self._ensure_available(day, wall_start, wall_start + self._policy.duration)

        profile = ClientProfile(
            name=request.name.strip() or DEFAULT_CLIENT_NAME,
            email=email,
            phone=phone,
            meeting_type=request.meeting_type,
            notes=request.notes or None,
        )
        attendees = dedupe_emails([email, *extra])
        draft = self._draft(
            title=f"{request.summary.strip()} - {profile.name}",
            profile=profile,
            wall_start=wall_start,
            attendees=attendees,
            send_reminder=request.send_reminder,
        )
        appointment = await self._create(draft)
        logger.info(
            "Created appointment %s for %s on %s",
            appointment.appointment_id,
            profile.name,
            wall_start.isoformat(),
        )

        confirm_note = (
            "Please reply to this email to confirm your attendance."
            if request.require_confirmation
            else None
        )
        sent = await self._notify(
            email,
            notifications.appointment_confirmed(
                self._summary(appointment, profile.name),
                branding=self._branding,
                extra=confirm_note,
            ),
        )
        return CreateResult(
            appointment=appointment,
            display_date=format_display_date(day),
            display_time=format_display_time(wall_start),
            attendees=attendees,
            requires_confirmation=request.require_confirmation,
            notification_sent=sent,
        )

    async def cancel(self, criteria: SearchCriteria) -> CancelResult:
        target = await self._resolve_target(criteria)
        profile = resolve_profile(target)
        await self._delete(target.appointment_id)
        logger.info("Cancelled appointment %s (%s)", target.appointment_id, target.title)

        summary = self._summary(target, profile.name)
        sent = await self._notify(
            profile.email,
            notifications.appointment_cancelled(summary, branding=self._branding),
        )
        return CancelResult(
            appointment=target,
            profile=profile,
            display_date=summary.date,
            display_time=summary.time,
            notification_sent=sent,
        )

    async def reschedule(self, request: RescheduleRequest) -> RescheduleResult:
        transitions: list[RescheduleState] = []

        def enter(state: RescheduleState) -> None:
            previous = transitions[-1] if transitions else None
            transitions.append(state)
            logger.info(
                "Reschedule %s -> %s",
                previous.value if previous else "start",
                state.value,
            )

        enter(RescheduleState.VALIDATING)
        clock = parse_clock_time(request.new_time)
        day = self.resolve_day(request.new_date)
        if request.criteria.is_empty:
            raise ValidationError(
                "Search criteria are required to find the appointment to reschedule",
                guidance="Provide the current title, date, name, email or phone.",
            )
        override_email = validate_email(request.email) if request.email else None
        override_phone = validate_phone(request.phone) if request.phone else None
        wall_start = combine_local(day, clock)

        enter(RescheduleState.RESOLVING)
        original = await self._resolve_target(request.criteria)

        if request.check_availability:
            enter(RescheduleState.CHECKING_AVAILABILITY)
            await self._ensure_available(
                day,
                wall_start,
                wall_start + self._policy.duration,
                exclude_id=original.appointment_id,
            )

        previous = self._summary(original, None)
        profile = self._replacement_profile(
            original,
            name=request.name,
            email=override_email,
            phone=override_phone,
            meeting_type=request.meeting_type,
            notes=request.notes,
            rescheduled_from=f"{previous.date} at {previous.time}",
        )
        base_title = (request.new_title or "").strip() or split_title(original.title)[0]
        draft = self._draft(
            title=f"{base_title} - {profile.name}",
            profile=profile,
            wall_start=wall_start,
            attendees=self._carried_attendees(original, profile),
            send_reminder=request.send_reminder,
        )

        enter(RescheduleState.CREATING)
        replacement = await self._create(draft)

        enter(RescheduleState.CANCELLING)
        try:
            await self._delete(original.appointment_id)
        except UpstreamError as exc:
            failure = await self._recover_failed_cancel(
                original, replacement, exc, force_proceed=request.force_proceed, enter=enter
            )
            raise failure from exc

        enter(RescheduleState.DONE)
        logger.info(
            "Rescheduled appointment %s -> %s",
            original.appointment_id,
            replacement.appointment_id,
        )
        summary = self._summary(replacement, profile.name)
        sent = await self._notify(
            profile.email,
            notifications.appointment_rescheduled(
                summary, previous=previous, branding=self._branding
            ),
        )
        return RescheduleResult(
            state=RescheduleState.DONE,
            original=original,
            replacement=replacement,
            profile=profile,
            previous_date=previous.date,
            previous_time=previous.time,
            display_date=summary.date,
            display_time=summary.time,
            transitions=transitions,
            notification_sent=sent,
        )

    async def _recover_failed_cancel(
        self,
        original: Appointment,
        replacement: Appointment,
        cause: UpstreamError,
        *,
        force_proceed: bool,
        enter: Callable[[RescheduleState], None],
    ) -> PartialFailureError | RescheduleAbortedError:
        """Compensate for a failed cancel of the original and return the error to raise."""
        logger.error(
            "Created replacement %s but could not cancel original %s: %s",
            replacement.appointment_id,
            original.appointment_id,
            cause.message,
        )
        if force_proceed:
            enter(RescheduleState.PARTIAL_FAILURE)
            return PartialFailureError(
                "The new appointment was created but the original could not be cancelled",
                original=original,
                replacement=replacement,
                cause=cause,
            )

        try:
            await self._delete(replacement.appointment_id)
        except UpstreamError as compensation_error:
            enter(RescheduleState.PARTIAL_FAILURE)
            logger.error(
                "Compensating delete of %s failed; both appointments remain",
                replacement.appointment_id,
            )
            return PartialFailureError(
                "The original could not be cancelled and removing the new appointment "
                "also failed; a duplicate booking remains",
                original=original,
                replacement=replacement,
                compensated=False,
                cause=compensation_error,
            )

        enter(RescheduleState.ABORTED)
        return RescheduleAbortedError(
            "The original appointment could not be cancelled, so the new appointment "
            "was removed again",
            original=original,
        )

    def _replacement_profile(
        self,
        original: Appointment,
        *,
        name: str | None,
        email: str | None,
        phone: str | None,
        meeting_type: MeetingType | None,
        notes: str | None,
        rescheduled_from: str,
    ) -> ClientProfile:
        """Explicit overrides win over whatever the original carries."""
        profile = resolve_profile(original)
        updates: dict[str, Any] = {"rescheduled_from": rescheduled_from}
        if name and name.strip():
            updates["name"] = name.strip()
        if email:
            updates["email"] = email
        if phone:
            updates["phone"] = phone
        if meeting_type is not None:
            updates["meeting_type"] = meeting_type
        if notes:
            updates["notes"] = notes
        profile = profile.model_copy(update=updates)
        if not profile.email:
            raise ValidationError(
                f"No client email could be found for '{original.title}'",
                guidance=(
                    "Provide the client's email address and try again. "
                    "The original appointment was NOT cancelled."
                ),
            )
        return profile

    @staticmethod
    def _carried_attendees(original: Appointment, profile: ClientProfile) -> list[str]:
        """Client first, then every other non-organizer attendee of the original."""
        client_email = (profile.email or "").lower()
        system_client = (client_attendee(original) or "").lower()
        organizer = (original.organizer or "").lower()
        carried = [
            a.email
            for a in original.attendees
            if not a.organizer
            and a.email.lower() not in {client_email, system_client, organizer}
            and not a.email.lower().endswith("calendar.google.com")
        ]
        return dedupe_emails([profile.email or "", *carried])

    async def list_user_appointments(
        self,
        *,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> UserAppointments:
        criteria = SearchCriteria(name=name, email=email, phone=phone)
        if not criteria.has_identity:
            raise ValidationError(
                "A name, email or phone is required",
                guidance="Provide at least one of name, email or phone.",
            )
        now = self.now()
        candidates = await self._list(now, now + self._search_horizon)
        return UserAppointments(
            criteria=criteria, appointments=filter_matches(candidates, criteria)
        )
