"""Plain-text message templates for client notifications."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Notification:
    subject: str
    body: str


@dataclass(frozen=True)
class AppointmentSummary:
    """The few details every client message quotes."""

    title: str
    date: str
    time: str
    client_name: str | None = None

    @property
    def greeting_name(self) -> str:
        return self.client_name or "there"


@dataclass(frozen=True)
class Branding:
    signature: str = "Appointment Management Team"
    contact_email: str | None = None

    def contact_line(self) -> str:
        if self.contact_email:
            return f"Please contact our team at {self.contact_email} to complete payment."
        return "Please contact our team to complete payment."


def appointment_confirmed(
    summary: AppointmentSummary,
    *,
    branding: Branding = Branding(),
    extra: str | None = None,
) -> Notification:
    body = [
        f"Hi {summary.greeting_name},",
        "",
        "Your appointment has been confirmed.",
        "",
        f"Payment is pending. {branding.contact_line()}",
        "",
        "Appointment Details:",
        f"- {summary.title}",
        f"- {summary.date} at {summary.time}",
    ]
    if extra:
        body += ["", extra]
    body += ["", "Best regards,", branding.signature]
    return Notification("Appointment Confirmed - Payment Pending", "\n".join(body))


def appointment_cancelled(
    summary: AppointmentSummary,
    *,
    branding: Branding = Branding(),
) -> Notification:
    body = [
        f"Hi {summary.greeting_name},",
        "",
        "Your appointment has been cancelled.",
        "",
        "Cancelled Appointment:",
        f"- {summary.title}",
        f"- Originally: {summary.date} at {summary.time}",
        "",
        "If you have any questions, please contact our support team.",
        "",
        "Best regards,",
        branding.signature,
    ]
    return Notification("Appointment Cancelled", "\n".join(body))


def appointment_rescheduled(
    summary: AppointmentSummary,
    *,
    previous: AppointmentSummary | None = None,
    branding: Branding = Branding(),
) -> Notification:
    body = [
        f"Hi {summary.greeting_name},",
        "",
        "Your appointment has been rescheduled.",
        "",
        "Updated Appointment:",
        f"- {summary.title}",
        f"- New Date: {summary.date} at {summary.time}",
    ]
    if previous is not None:
        body.append(f"- Previously: {previous.date} at {previous.time}")
    body += [
        "",
        "Please check your calendar for the new date and time.",
        "",
        "Best regards,",
        branding.signature,
    ]
    return Notification("Appointment Rescheduled", "\n".join(body))


def reminder_time_text(minutes: int) -> str:
    if minutes == 30:
        return "in 30 minutes"
    if minutes == 60:
        return "in 1 hour"
    if minutes == 1440:
        return "in 1 day"
    if minutes % 1440 == 0:
        return f"in {minutes // 1440} days"
    if minutes % 60 == 0:
        return f"in {minutes // 60} hours"
    return f"in {minutes} minutes"


# Intervals at or below this many minutes get the urgent template.
URGENT_THRESHOLD_MINUTES = 30


def reminder(
    summary: AppointmentSummary,
    interval_minutes: int,
    *,
    branding: Branding = Branding(),
) -> Notification:
    time_text = reminder_time_text(interval_minutes)
    name = summary.client_name or "Client"
    details = [
        "APPOINTMENT DETAILS:",
        f"- Title: {summary.title}",
        f"- Date: {summary.date}",
        f"- Time: {summary.time}",
    ]
    if interval_minutes <= URGENT_THRESHOLD_MINUTES:
        body = [
            f"Hello {name},",
            "",
            f"IMMEDIATE REMINDER: Your appointment starts {time_text}!",
            "",
            *details,
            "",
            "LAST-MINUTE CHECKLIST:",
            "- Leave now if you haven't already",
            "- Bring required documents or ID",
            "- Have your contact information ready",
            f"- Payment still pending. {branding.contact_line()}",
            "",
            "Need to cancel or reschedule? Contact us immediately!",
            "",
            "See you soon!",
            branding.signature,
        ]
        return Notification(
            f"Your appointment starts {time_text} - {summary.title}", "\n".join(body)
        )

    body = [
        f"Dear {name},",
        "",
        f"This is a friendly reminder about your upcoming appointment scheduled {time_text}.",
        "",
        *details,
        "",
        "PREPARATION REMINDERS:",
        "- Please arrive 10 minutes early",
        "- Bring any required documents or ID",
        "- If you need to reschedule, please contact us at least 24 hours in advance",
        "",
        f"PAYMENT REMINDER: {branding.contact_line()}",
        "",
        "If you have any questions or need to make changes, please reach out.",
        "",
        "Best regards,",
        branding.signature,
    ]
    return Notification(
        f"Upcoming Appointment Reminder - {summary.title} ({time_text})", "\n".join(body)
    )
