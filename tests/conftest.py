"""Shared test fixtures for the concierge test suite."""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from concierge.booking.coordinator import AppointmentCoordinator
from concierge.booking.models import Appointment, Attendee, AttendeeResponse, ClientProfile
from concierge.booking.timezone import DEFAULT_UTC_OFFSET
from concierge.modules.calendar import CalendarRequestError, InMemoryCalendarProvider
from concierge.modules.email import EmailDeliveryError, Notifier

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

# 2024-05-01 10:00 at +05:30.
REFERENCE_NOW = datetime(2024, 5, 1, 4, 30, tzinfo=UTC)


class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime = REFERENCE_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(Notifier):
    """Notifier double that records messages; recipients in ``fail_for`` raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_for: set[str] = set()

    @property
    def name(self) -> str:
        return "recording"

    async def send(self, recipient: str, subject: str, body: str) -> dict[str, Any]:
        if recipient in self.fail_for:
            raise EmailDeliveryError(f"delivery to {recipient} refused")
        self.sent.append((recipient, subject, body))
        return {"status": "sent", "to": recipient, "subject": subject}

    def subjects_for(self, recipient: str) -> list[str]:
        return [subject for to, subject, _ in self.sent if to == recipient]


class FlakyCalendarProvider(InMemoryCalendarProvider):
    """In-memory provider whose deletes can be made to fail per event id."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_delete: dict[str, int] = {}
        self.fail_create_status: int | None = None
        self.deleted: list[str] = []
        self.created: list[str] = []

    async def create_event(self, *, calendar_id, draft):  # noqa: ANN001, ANN201
        if self.fail_create_status is not None:
            raise CalendarRequestError(status_code=self.fail_create_status, message="create failed")
        appointment = await super().create_event(calendar_id=calendar_id, draft=draft)
        self.created.append(appointment.appointment_id)
        return appointment

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        status = self.fail_delete.get(event_id)
        if status is not None:
            raise CalendarRequestError(status_code=status, message="delete failed")
        await super().delete_event(calendar_id=calendar_id, event_id=event_id)
        self.deleted.append(event_id)

    def fail_next_creates_with(self, status: int) -> None:
        self.fail_create_status = status


def local_instant(text: str, offset: timedelta = DEFAULT_UTC_OFFSET) -> datetime:
    """UTC instant for a local ``YYYY-MM-DD HH:MM`` wall clock."""
    wall = datetime.strptime(text, "%Y-%m-%d %H:%M")
    return (wall - offset).replace(tzinfo=UTC)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> FlakyCalendarProvider:
    return FlakyCalendarProvider()


@pytest.fixture
def coordinator(
    provider: FlakyCalendarProvider, notifier: RecordingNotifier, clock: FixedClock
) -> AppointmentCoordinator:
    return AppointmentCoordinator(provider, notifier, clock=clock)


@pytest.fixture
def make_appointment() -> Callable[..., Appointment]:
    """Factory for appointments at local wall-clock times (+05:30)."""
    counter = iter(range(1, 10_000))

    def _make(
        title: str,
        start: str,
        *,
        minutes: int = 45,
        appointment_id: str | None = None,
        client: ClientProfile | None = None,
        attendees: list[str] | None = None,
        declined: list[str] | None = None,
        organizer: str | None = None,
        description: str | None = None,
        all_day: bool = False,
    ) -> Appointment:
        start_at = local_instant(start)
        people = [Attendee(email=email) for email in attendees or []]
        people += [
            Attendee(email=email, response_status=AttendeeResponse.DECLINED)
            for email in declined or []
        ]
        if organizer:
            people.append(Attendee(email=organizer, organizer=True))
        return Appointment(
            appointment_id=appointment_id or f"evt-{next(counter)}",
            title=title,
            start_at=start_at,
            end_at=start_at + timedelta(minutes=minutes),
            all_day=all_day,
            attendees=people,
            organizer=organizer,
            client=client,
            description=description,
        )

    return _make


class StubMCP:
    """Captures tools registered through ``@mcp.tool()``."""

    def __init__(self) -> None:
        self.tools: dict[str, Any] = {}

    def tool(self, *_args: Any, **_kwargs: Any):  # noqa: ANN201
        def decorator(fn):  # noqa: ANN001, ANN202
            self.tools[fn.__name__] = fn
            return fn

        return decorator


@pytest.fixture
def stub_mcp() -> StubMCP:
    return StubMCP()


# ---------------------------------------------------------------------------
# Postgres (integration)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for DB-backed tests in this session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
async def state_pool(postgres_container: PostgresContainer) -> AsyncIterator[Pool]:
    """Fresh database with the ``state`` table; one per test."""
    from concierge.db import Database

    db = Database(
        db_name=f"test_{uuid.uuid4().hex[:12]}",
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
        min_pool_size=1,
        max_pool_size=3,
    )
    await db.provision()
    pool = await db.connect()

    # Mirrors the core_001 Alembic migration.
    await pool.execute("""
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)
    try:
        yield pool
    finally:
        await db.close()
