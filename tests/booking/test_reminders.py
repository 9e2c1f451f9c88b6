"""Tests for the reminder scheduler and marker bookkeeping."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import REFERENCE_NOW, local_instant
from pydantic import ValidationError

from concierge.booking.models import ClientProfile, ReminderMarker, marker_key
from concierge.booking.notifications import Branding
from concierge.booking.reminders import (
    InMemoryMarkerStore,
    ReminderConfig,
    ReminderScheduler,
    reminder_recipients,
)

pytestmark = pytest.mark.unit

ALICE = ClientProfile(name="Alice", email="alice@example.com")


@pytest.fixture
def store() -> InMemoryMarkerStore:
    return InMemoryMarkerStore()


@pytest.fixture
def scheduler(provider, notifier, store, clock) -> ReminderScheduler:
    return ReminderScheduler(provider, notifier, store, clock=clock)


@pytest.fixture
def alice_at_eleven(provider, make_appointment):
    """Alice's appointment one hour after the reference time (10:00 local)."""
    appt = make_appointment(
        "Consultation - Alice",
        "2024-05-01 11:00",
        appointment_id="appt-1",
        client=ALICE,
        attendees=["alice@example.com"],
    )
    provider.add(appt)
    return appt


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestReminderConfig:
    def test_defaults(self):
        config = ReminderConfig()
        assert config.intervals_minutes == [30, 60, 1440]
        assert config.poll_interval_seconds == 120
        assert config.tolerance_minutes == 3

    def test_intervals_sorted_and_unique(self):
        assert ReminderConfig(intervals_minutes=[60, 30, 60]).intervals_minutes == [30, 60]

    @pytest.mark.parametrize("intervals", [[], [0], [-5, 30]])
    def test_invalid_intervals(self, intervals):
        with pytest.raises(ValidationError):
            ReminderConfig(intervals_minutes=intervals)

    def test_tolerance_must_cover_poll_interval(self):
        with pytest.raises(ValidationError, match="poll interval"):
            ReminderConfig(poll_interval_seconds=600, tolerance_minutes=3)


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------


class TestRecipients:
    def test_client_only(self, make_appointment):
        appt = make_appointment(
            "Visit",
            "2024-05-01 11:00",
            client=ALICE,
            attendees=["alice@example.com", "carol@example.com"],
        )
        assert reminder_recipients(appt) == ["alice@example.com"]

    def test_declined_client_falls_back_to_other_guests(self, make_appointment):
        appt = make_appointment(
            "Visit",
            "2024-05-01 11:00",
            client=ALICE,
            attendees=["carol@example.com", "room@resource.calendar.google.com"],
            declined=["alice@example.com"],
            organizer="frontdesk@clinic.test",
        )
        assert reminder_recipients(appt) == ["carol@example.com"]

    def test_nobody_to_remind(self, make_appointment):
        appt = make_appointment("Visit", "2024-05-01 11:00", declined=["alice@example.com"])
        assert reminder_recipients(appt) == []


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------


class TestRunCycle:
    async def test_due_interval_is_sent_once(
        self, scheduler, notifier, store, clock, alice_at_eleven
    ):
        first = await scheduler.run_cycle()

        assert first.scanned == 1
        assert [(r.appointment_id, r.interval_minutes) for r in first.dispatched] == [
            ("appt-1", 60)
        ]
        assert notifier.subjects_for("alice@example.com") == [
            "Upcoming Appointment Reminder - Consultation - Alice (in 1 hour)"
        ]
        marker = await store.get(marker_key("appt-1", 60))
        assert marker is not None
        assert marker.sent_at == REFERENCE_NOW
        assert marker.appointment_start == alice_at_eleven.start_at

        clock.advance(minutes=2)
        second = await scheduler.run_cycle()

        assert second.dispatched == []
        assert len(notifier.sent) == 1

    async def test_each_interval_fires_separately(
        self, scheduler, notifier, clock, alice_at_eleven
    ):
        await scheduler.run_cycle()
        clock.advance(minutes=30)
        report = await scheduler.run_cycle()

        assert [r.interval_minutes for r in report.dispatched] == [30]
        assert notifier.subjects_for("alice@example.com")[-1] == (
            "Your appointment starts in 30 minutes - Consultation - Alice"
        )

    @pytest.mark.parametrize(("offset_minutes", "due"), [(-3, True), (3, True), (4, False)])
    async def test_tolerance_window(
        self, scheduler, provider, make_appointment, offset_minutes, due
    ):
        start = REFERENCE_NOW + timedelta(minutes=60 + offset_minutes)
        local = (start + timedelta(hours=5, minutes=30)).strftime("%Y-%m-%d %H:%M")
        provider.add(make_appointment("Visit", local, client=ALICE))

        report = await scheduler.run_cycle()

        assert bool(report.dispatched) is due

    async def test_all_day_events_are_ignored(self, scheduler, provider, make_appointment):
        provider.add(
            make_appointment(
                "Holiday", "2024-05-01 11:00", minutes=24 * 60, all_day=True, client=ALICE
            )
        )
        report = await scheduler.run_cycle()
        assert report.scanned == 0

    async def test_undeliverable_reminder_leaves_no_marker(
        self, scheduler, provider, store, make_appointment
    ):
        provider.add(make_appointment("Visit", "2024-05-01 11:00", declined=["x@example.com"]))

        report = await scheduler.run_cycle()

        assert report.dispatched == []
        assert len(report.undelivered) == 1
        assert await store.list_all() == []

    async def test_send_failure_is_recorded_not_raised(
        self, scheduler, notifier, store, alice_at_eleven
    ):
        notifier.fail_for.add("alice@example.com")

        report = await scheduler.run_cycle()

        assert report.undelivered[0].failed == ["alice@example.com"]
        assert await store.list_all() == []

    async def test_partial_delivery_marks_the_reminder_sent(
        self, scheduler, provider, notifier, store, clock, make_appointment
    ):
        provider.add(
            make_appointment(
                "Visit",
                "2024-05-01 11:00",
                appointment_id="appt-2",
                client=ALICE,
                attendees=["carol@example.com", "dave@example.com"],
                declined=["alice@example.com"],
            )
        )
        notifier.fail_for.add("dave@example.com")

        report = await scheduler.run_cycle()

        [record] = report.dispatched
        assert record.recipients == ["carol@example.com"]
        assert record.failed == ["dave@example.com"]
        assert await store.get(marker_key("appt-2", 60)) is not None

        clock.advance(minutes=2)
        assert (await scheduler.run_cycle()).dispatched == []
        assert len(notifier.subjects_for("carol@example.com")) == 1

    async def test_calendar_failure_is_reported(self, scheduler, provider):
        async def broken(**_kwargs):
            from concierge.modules.calendar import CalendarRequestError

            raise CalendarRequestError(status_code=503, message="backend unavailable")

        provider.list_events = broken
        report = await scheduler.run_cycle()
        assert "503" in report.error
        assert report.scanned == 0

    async def test_concurrent_cycle_is_skipped(self, scheduler):
        scheduler._scan_in_progress = True
        report = await scheduler.run_cycle()
        assert report.skipped is True
        assert scheduler.last_report is None

    async def test_branding_reaches_message(
        self, provider, notifier, store, clock, alice_at_eleven
    ):
        scheduler = ReminderScheduler(
            provider, notifier, store, clock=clock, branding=Branding(signature="Riverside Clinic")
        )
        await scheduler.run_cycle()
        assert notifier.sent[0][2].endswith("Riverside Clinic")


class TestPrune:
    async def test_markers_for_past_appointments_are_removed(self, scheduler, store):
        stale = ReminderMarker(
            appointment_id="old",
            interval_minutes=30,
            sent_at=REFERENCE_NOW - timedelta(hours=3),
            appointment_start=REFERENCE_NOW - timedelta(hours=2),
        )
        fresh = ReminderMarker(
            appointment_id="soon",
            interval_minutes=60,
            sent_at=REFERENCE_NOW - timedelta(minutes=30),
            appointment_start=local_instant("2024-05-01 10:30"),
        )
        ancient = ReminderMarker(
            appointment_id="far",
            interval_minutes=1440,
            sent_at=REFERENCE_NOW - timedelta(days=8),
            appointment_start=REFERENCE_NOW + timedelta(days=1),
        )
        for marker in (stale, fresh, ancient):
            await store.put(marker)

        report = await scheduler.run_cycle()

        assert report.pruned == 2
        assert [m.appointment_id for m in await store.list_all()] == ["soon"]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_runs_a_cycle_and_stop_cancels(
        self, scheduler, notifier, alice_at_eleven
    ):
        scheduler.start()
        assert scheduler.running is True
        for _ in range(50):
            if scheduler.last_report is not None:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler.last_report is not None
        assert len(notifier.sent) == 1

    async def test_stop_without_start_is_noop(self, scheduler):
        await scheduler.stop()
        assert scheduler.running is False

    async def test_status(self, scheduler, alice_at_eleven):
        await scheduler.run_cycle()
        status = await scheduler.status()
        assert status["running"] is False
        assert status["markers"] == 1
        assert status["last_cycle"]["dispatched"][0]["interval_minutes"] == 60
