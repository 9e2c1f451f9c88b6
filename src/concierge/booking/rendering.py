"""Human-readable text for tool results and errors."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from concierge.booking.dates import format_display_date, format_display_time
from concierge.booking.errors import (
    AmbiguousMatchError,
    BookingError,
    NotFoundError,
    PartialFailureError,
    UpstreamError,
)
from concierge.booking.models import Appointment
from concierge.booking.profile import resolve_profile
from concierge.booking.timezone import DEFAULT_UTC_OFFSET, to_display_form

if TYPE_CHECKING:
    from concierge.booking.coordinator import (
        CancelResult,
        CreateResult,
        RescheduleResult,
        ScheduleResult,
        SlotRecommendation,
        UserAppointments,
    )


def _when(appointment: Appointment, offset: timedelta) -> str:
    if appointment.all_day:
        return f"{format_display_date(appointment.start_at.date())} (all day)"
    start = to_display_form(appointment.start_at, offset=offset)
    end = to_display_form(appointment.end_at, offset=offset)
    return (
        f"{format_display_date(start.date())}, "
        f"{format_display_time(start)}-{format_display_time(end)}"
    )


def appointment_line(appointment: Appointment, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    profile = resolve_profile(appointment)
    line = f"- {appointment.title} | {_when(appointment, offset)}"
    if profile.email:
        line += f" | {profile.email}"
    return line


def render_schedule(result: ScheduleResult, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    if not result.appointments:
        return f"No appointments on {result.display_date}."
    lines = [f"Appointments on {result.display_date} ({len(result.appointments)}):"]
    for appt in result.appointments:
        if appt.all_day:
            lines.append(f"- All day: {appt.title}")
            continue
        start = to_display_form(appt.start_at, offset=offset)
        end = to_display_form(appt.end_at, offset=offset)
        lines.append(
            f"- {format_display_time(start)}-{format_display_time(end)}: {appt.title}"
        )
    return "\n".join(lines)


def render_slots(result: SlotRecommendation) -> str:
    if result.total == 0:
        return (
            f"No free slots on {result.display_date}. "
            "Try another date or ask for the schedule to see what is booked."
        )
    lines = [f"Available slots on {result.display_date}:"]
    for label, slots in result.slots.items():
        lines.append("")
        lines.append(f"{label.capitalize()}:")
        if not slots:
            lines.append("- none")
            continue
        for slot in slots:
            lines.append(f"- {format_display_time(slot.start)}-{format_display_time(slot.end)}")
    return "\n".join(lines)


def render_created(result: CreateResult) -> str:
    appt = result.appointment
    lines = [
        "Appointment scheduled.",
        "",
        f"Title: {appt.title}",
        f"Date: {result.display_date}",
        f"Time: {result.display_time}",
        f"Attendees: {', '.join(result.attendees)}",
    ]
    if appt.html_link:
        lines.append(f"Link: {appt.html_link}")
    if result.requires_confirmation:
        lines.append("Confirmation from the client is still required.")
    if not result.notification_sent:
        lines.append("Note: the confirmation email could not be sent.")
    return "\n".join(lines)


def render_cancelled(result: CancelResult) -> str:
    lines = [
        "Appointment cancelled.",
        "",
        f"Title: {result.appointment.title}",
        f"Was scheduled: {result.display_date} at {result.display_time}",
        f"Client: {result.profile.name}",
    ]
    if result.profile.email and not result.notification_sent:
        lines.append("Note: the cancellation email could not be sent.")
    return "\n".join(lines)


def render_rescheduled(result: RescheduleResult) -> str:
    lines = [
        "Appointment rescheduled.",
        "",
        f"Title: {result.replacement.title}",
        f"Previously: {result.previous_date} at {result.previous_time}",
        f"Now: {result.display_date} at {result.display_time}",
        f"Client: {result.profile.name} ({result.profile.email})",
    ]
    if not result.notification_sent:
        lines.append("Note: the rescheduling email could not be sent.")
    return "\n".join(lines)


def render_user_appointments(
    result: UserAppointments, *, offset: timedelta = DEFAULT_UTC_OFFSET
) -> str:
    who = ", ".join(f"{k}={v}" for k, v in result.criteria.describe().items())
    if not result.appointments:
        return f"No upcoming appointments found for {who}."
    lines = [f"Upcoming appointments for {who} ({len(result.appointments)}):"]
    lines += [appointment_line(appt, offset=offset) for appt in result.appointments]
    return "\n".join(lines)


def render_ambiguous(
    error: AmbiguousMatchError, *, offset: timedelta = DEFAULT_UTC_OFFSET
) -> str:
    lines = [f"Found {error.total} matching appointments:"]
    lines += [
        f"{index}. {appointment_line(appt, offset=offset)[2:]}"
        for index, appt in enumerate(error.candidates, start=1)
    ]
    remaining = error.total - len(error.candidates)
    if remaining > 0:
        lines.append(f"... and {remaining} more")
    lines += ["", error.guidance or ""]
    return "\n".join(lines).rstrip()


def render_not_found(error: NotFoundError) -> str:
    lines = ["No appointment found."]
    if error.criteria:
        lines.append("")
        lines.append("Searched for:")
        lines += [f"- {key}: {value}" for key, value in error.criteria.items()]
    lines += [
        "",
        "Tips:",
        "- Check the spelling of the title or client name",
        "- Try a shorter, partial title",
        "- Search by email or phone instead",
        "- Leave out the date to search the next 30 days",
    ]
    return "\n".join(lines)


def render_partial_failure(
    error: PartialFailureError, *, offset: timedelta = DEFAULT_UTC_OFFSET
) -> str:
    original = error.original
    replacement = error.replacement
    return "\n".join(
        [
            f"WARNING: {error.message}.",
            "",
            f"New appointment: {replacement.title} ({_when(replacement, offset)})",
            f"Original still present: {original.title} ({_when(original, offset)})",
            "",
            "Action required:",
            f"- {error.guidance}",
            "- Until then the client holds two bookings.",
        ]
    )


def render_error(error: BookingError, *, offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    """Text for any booking error, with remediation guidance when available."""
    if isinstance(error, AmbiguousMatchError):
        return render_ambiguous(error, offset=offset)
    if isinstance(error, NotFoundError):
        return render_not_found(error)
    if isinstance(error, PartialFailureError):
        return render_partial_failure(error, offset=offset)
    if isinstance(error, UpstreamError):
        return f"Calendar service error ({error.kind.value}): {error.message}\n{error.guidance}"
    if error.guidance:
        return f"{error.message}\n{error.guidance}"
    return error.message
