"""Reminder dispatch for upcoming appointments.

Every cycle scans the calendar for appointments starting within the largest
reminder interval, sends the reminders whose interval has come due, and
records a marker per ``(appointment, interval)`` so that later cycles inside
the same tolerance window do not send again. The marker is the only
deduplication signal.

The scheduler runs as a background task in the daemon and can also be
invoked once per external timer through :meth:`ReminderScheduler.run_cycle`.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from concierge.booking import notifications
from concierge.booking.dates import format_display_date, format_display_time
from concierge.booking.models import (
    DEFAULT_CLIENT_NAME,
    Appointment,
    AttendeeResponse,
    ReminderMarker,
)
from concierge.booking.notifications import AppointmentSummary, Branding
from concierge.booking.profile import resolve_profile
from concierge.booking.timezone import DEFAULT_UTC_OFFSET, to_display_form
from concierge.core.state import state_delete, state_get, state_scan, state_set
from concierge.core.telemetry import get_tracer
from concierge.modules.calendar import CalendarAuthError

if TYPE_CHECKING:
    import asyncpg

    from concierge.modules.calendar import CalendarProvider
    from concierge.modules.email import Notifier

logger = logging.getLogger(__name__)

MARKER_KEY_PREFIX = "reminder::"

_SYSTEM_EMAIL_SUFFIX = "calendar.google.com"


class ReminderConfig(BaseModel):
    """Reminder scheduling settings (``[modules.appointments.reminders]``)."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    poll_interval_seconds: int = Field(default=120, ge=1)
    intervals_minutes: list[int] = Field(default_factory=lambda: [30, 60, 1440])
    tolerance_minutes: int = Field(default=3, ge=1)
    retention_minutes: int = Field(default=60, ge=0)
    marker_max_age_days: int = Field(default=7, ge=1)
    lookahead_limit: int = Field(default=250, ge=1)

    @field_validator("intervals_minutes")
    @classmethod
    def _normalize_intervals(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("intervals_minutes must contain at least one interval")
        if any(v <= 0 for v in value):
            raise ValueError("intervals_minutes must be positive")
        return sorted(set(value))

    @model_validator(mode="after")
    def _tolerance_covers_poll(self) -> ReminderConfig:
        # A narrower window could fall entirely between two polls.
        if self.tolerance_minutes * 60 < self.poll_interval_seconds:
            raise ValueError(
                "tolerance_minutes must span at least one poll interval "
                f"({self.poll_interval_seconds}s)"
            )
        return self


# ---------------------------------------------------------------------------
# Marker stores
# ---------------------------------------------------------------------------


class MarkerStore(abc.ABC):
    """Key-value storage for reminder markers."""

    @abc.abstractmethod
    async def get(self, key: str) -> ReminderMarker | None: ...

    @abc.abstractmethod
    async def put(self, marker: ReminderMarker) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    async def list_all(self) -> list[ReminderMarker]: ...


class InMemoryMarkerStore(MarkerStore):
    """Process-local markers; lost on restart."""

    def __init__(self) -> None:
        self._markers: dict[str, ReminderMarker] = {}

    async def get(self, key: str) -> ReminderMarker | None:
        return self._markers.get(key)

    async def put(self, marker: ReminderMarker) -> None:
        self._markers[marker.key()] = marker

    async def delete(self, key: str) -> None:
        self._markers.pop(key, None)

    async def list_all(self) -> list[ReminderMarker]:
        return list(self._markers.values())


class StateMarkerStore(MarkerStore):
    """Markers persisted in the JSONB ``state`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @staticmethod
    def _decode(key: str, value: Any) -> ReminderMarker | None:
        if not isinstance(value, dict):
            logger.warning("Ignoring malformed reminder marker %s", key)
            return None
        try:
            return ReminderMarker.model_validate(value)
        except ValueError:
            logger.warning("Ignoring malformed reminder marker %s", key)
            return None

    async def get(self, key: str) -> ReminderMarker | None:
        value = await state_get(self._pool, key)
        if value is None:
            return None
        return self._decode(key, value)

    async def put(self, marker: ReminderMarker) -> None:
        await state_set(self._pool, marker.key(), marker.model_dump(mode="json"))

    async def delete(self, key: str) -> None:
        await state_delete(self._pool, key)

    async def list_all(self) -> list[ReminderMarker]:
        markers = [
            self._decode(key, value)
            for key, value in await state_scan(self._pool, MARKER_KEY_PREFIX)
        ]
        return [marker for marker in markers if marker is not None]


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class DispatchRecord(BaseModel):
    appointment_id: str
    title: str
    interval_minutes: int
    recipients: list[str]
    failed: list[str] = Field(default_factory=list)


class ReminderCycleReport(BaseModel):
    started_at: datetime
    skipped: bool = False
    scanned: int = 0
    dispatched: list[DispatchRecord] = Field(default_factory=list)
    undelivered: list[DispatchRecord] = Field(default_factory=list)
    pruned: int = 0
    error: str | None = None


def reminder_recipients(appointment: Appointment) -> list[str]:
    """The client, or if the client declined, every other attendee who has not.

    Organizer and calendar system addresses are never reminded.
    """
    declined = {
        a.email.lower()
        for a in appointment.attendees
        if a.response_status is AttendeeResponse.DECLINED
    }
    client_email = resolve_profile(appointment).email
    if client_email and client_email.lower() not in declined:
        return [client_email]

    organizer = (appointment.organizer or "").lower()
    return [
        a.email
        for a in appointment.attendees
        if not a.organizer
        and a.email.lower() not in declined
        and a.email.lower() != organizer
        and not a.email.lower().endswith(_SYSTEM_EMAIL_SUFFIX)
    ]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ReminderScheduler:
    """Polls the calendar and sends reminders at the configured intervals."""

    def __init__(
        self,
        provider: CalendarProvider,
        notifier: Notifier,
        store: MarkerStore,
        config: ReminderConfig | None = None,
        *,
        calendar_id: str = "primary",
        clock: Callable[[], datetime] | None = None,
        offset: timedelta = DEFAULT_UTC_OFFSET,
        branding: Branding | None = None,
    ) -> None:
        self._provider = provider
        self._notifier = notifier
        self._store = store
        self._config = config or ReminderConfig()
        self._calendar_id = calendar_id
        self._clock = clock or _utc_now
        self._offset = offset
        self._branding = branding or Branding()
        self._task: asyncio.Task[None] | None = None
        self._wake_event = asyncio.Event()
        self._scan_in_progress = False
        self._last_report: ReminderCycleReport | None = None

    @property
    def config(self) -> ReminderConfig:
        return self._config

    @property
    def store(self) -> MarkerStore:
        return self._store

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> ReminderCycleReport | None:
        return self._last_report

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self.running:
            logger.warning("Reminder scheduler already running")
            return
        self._task = asyncio.create_task(self._run_loop(), name="concierge-reminder-scheduler")
        logger.info(
            "Reminder scheduler started (poll=%ds, intervals=%s, tolerance=%dm)",
            self._config.poll_interval_seconds,
            self._config.intervals_minutes,
            self._config.tolerance_minutes,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Reminder scheduler stopped")

    def trigger(self) -> None:
        """Wake the loop for an immediate cycle."""
        self._wake_event.set()

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.error("Reminder cycle failed: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._wake_event.wait(),
                    timeout=self._config.poll_interval_seconds,
                )
                self._wake_event.clear()
                logger.debug("Reminder cycle triggered early")
            except TimeoutError:
                pass

    # -- cycle ---------------------------------------------------------------

    async def run_cycle(self, now: datetime | None = None) -> ReminderCycleReport:
        """Run one scan. Returns a skipped report if a scan is already running."""
        now = now or self._clock()
        if self._scan_in_progress:
            logger.info("Reminder scan already in progress; skipping")
            return ReminderCycleReport(started_at=now, skipped=True)

        self._scan_in_progress = True
        try:
            with get_tracer().start_as_current_span("concierge.reminders.cycle") as span:
                report = await self._scan(now)
                span.set_attribute("reminders.scanned", report.scanned)
                span.set_attribute("reminders.dispatched", len(report.dispatched))
                span.set_attribute("reminders.pruned", report.pruned)
        finally:
            self._scan_in_progress = False

        self._last_report = report
        if report.dispatched or report.undelivered or report.pruned:
            logger.info(
                "Reminder cycle: scanned=%d dispatched=%d undelivered=%d pruned=%d",
                report.scanned,
                len(report.dispatched),
                len(report.undelivered),
                report.pruned,
            )
        return report

    async def _scan(self, now: datetime) -> ReminderCycleReport:
        report = ReminderCycleReport(started_at=now)
        tolerance = self._config.tolerance_minutes
        horizon = timedelta(minutes=max(self._config.intervals_minutes) + tolerance)

        try:
            upcoming = await self._provider.list_events(
                calendar_id=self._calendar_id,
                start_at=now,
                end_at=now + horizon,
                limit=self._config.lookahead_limit,
            )
        except CalendarAuthError as exc:
            logger.error("Reminder scan could not list appointments: %s", exc)
            report.error = str(exc)
            upcoming = []

        for appointment in upcoming:
            if appointment.is_cancelled or appointment.all_day:
                continue
            report.scanned += 1
            minutes_until = (appointment.start_at - now).total_seconds() / 60
            for interval in self._config.intervals_minutes:
                if abs(minutes_until - interval) > tolerance:
                    continue
                marker = ReminderMarker(
                    appointment_id=appointment.appointment_id,
                    interval_minutes=interval,
                    sent_at=now,
                    appointment_start=appointment.start_at,
                )
                if await self._store.get(marker.key()) is not None:
                    continue
                record = await self._dispatch(appointment, interval)
                # One delivery marks the interval sent; failed recipients are
                # reported, not retried, so delivered ones get no duplicate.
                if record.recipients:
                    await self._store.put(marker)
                    report.dispatched.append(record)
                else:
                    report.undelivered.append(record)

        report.pruned = await self._prune(now)
        return report

    async def _dispatch(self, appointment: Appointment, interval: int) -> DispatchRecord:
        profile = resolve_profile(appointment)
        start = to_display_form(appointment.start_at, offset=self._offset)
        summary = AppointmentSummary(
            title=appointment.title,
            date=format_display_date(start.date()),
            time=format_display_time(start),
            client_name=None if profile.name == DEFAULT_CLIENT_NAME else profile.name,
        )
        message = notifications.reminder(summary, interval, branding=self._branding)

        record = DispatchRecord(
            appointment_id=appointment.appointment_id,
            title=appointment.title,
            interval_minutes=interval,
            recipients=[],
        )
        for recipient in reminder_recipients(appointment):
            try:
                await self._notifier.send(recipient, message.subject, message.body)
            except Exception:
                logger.warning(
                    "Reminder (%dm) for %s to %s failed",
                    interval,
                    appointment.appointment_id,
                    recipient,
                    exc_info=True,
                )
                record.failed.append(recipient)
                continue
            record.recipients.append(recipient)
        return record

    async def _prune(self, now: datetime) -> int:
        start_cutoff = now - timedelta(minutes=self._config.retention_minutes)
        age_cutoff = now - timedelta(days=self._config.marker_max_age_days)
        pruned = 0
        for marker in await self._store.list_all():
            if marker.appointment_start < start_cutoff or marker.sent_at < age_cutoff:
                await self._store.delete(marker.key())
                pruned += 1
        return pruned

    async def status(self) -> dict[str, Any]:
        markers = await self._store.list_all()
        return {
            "running": self.running,
            "scan_in_progress": self._scan_in_progress,
            "poll_interval_seconds": self._config.poll_interval_seconds,
            "intervals_minutes": self._config.intervals_minutes,
            "tolerance_minutes": self._config.tolerance_minutes,
            "markers": len(markers),
            "last_cycle": (
                self._last_report.model_dump(mode="json") if self._last_report else None
            ),
        }
