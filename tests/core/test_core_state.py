"""Tests for concierge.core.state and the Postgres-backed reminder marker store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import docker_available

from concierge.booking.models import ReminderMarker
from concierge.booking.reminders import StateMarkerStore
from concierge.core.state import load_jsonb, state_delete, state_get, state_scan, state_set

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
    pytest.mark.asyncio(loop_scope="session"),
]


def _marker(appointment_id: str, interval: int) -> ReminderMarker:
    start = datetime(2024, 5, 1, 5, 30, tzinfo=UTC)
    return ReminderMarker(
        appointment_id=appointment_id,
        interval_minutes=interval,
        sent_at=start - timedelta(minutes=interval),
        appointment_start=start,
    )


class TestStateStore:
    async def test_get_missing_key(self, state_pool):
        assert await state_get(state_pool, "nope") is None

    async def test_set_and_get(self, state_pool):
        await state_set(state_pool, "k", {"a": 1, "b": [1, 2]})
        assert await state_get(state_pool, "k") == {"a": 1, "b": [1, 2]}

    async def test_upsert_bumps_version(self, state_pool):
        assert await state_set(state_pool, "k", 1) == 1
        assert await state_set(state_pool, "k", 2) == 2
        assert await state_get(state_pool, "k") == 2

    async def test_delete_is_idempotent(self, state_pool):
        await state_set(state_pool, "k", "v")
        await state_delete(state_pool, "k")
        await state_delete(state_pool, "k")
        assert await state_get(state_pool, "k") is None

    async def test_list_by_prefix(self, state_pool):
        await state_set(state_pool, "reminder::a::30", {"x": 1})
        await state_set(state_pool, "reminder::b::60", {"x": 2})
        await state_set(state_pool, "other", {"x": 3})

        assert [key for key, _ in await state_scan(state_pool, "reminder::")] == [
            "reminder::a::30",
            "reminder::b::60",
        ]
        assert ("other", {"x": 3}) in await state_scan(state_pool)

    async def test_prefix_wildcards_are_literal(self, state_pool):
        await state_set(state_pool, "a_b", 1)
        await state_set(state_pool, "axb", 2)
        assert await state_scan(state_pool, "a_") == [("a_b", 1)]


class TestStateMarkerStore:
    async def test_round_trip(self, state_pool):
        store = StateMarkerStore(state_pool)
        marker = _marker("evt-1", 30)

        await store.put(marker)

        assert await store.get(marker.key()) == marker
        assert await store.list_all() == [marker]

    async def test_delete(self, state_pool):
        store = StateMarkerStore(state_pool)
        marker = _marker("evt-1", 60)
        await store.put(marker)
        await store.delete(marker.key())
        assert await store.get(marker.key()) is None

    async def test_unrelated_and_malformed_rows_are_ignored(self, state_pool):
        store = StateMarkerStore(state_pool)
        await store.put(_marker("evt-1", 30))
        await state_set(state_pool, "reminder::broken::30", {"appointment_id": "broken"})
        await state_set(state_pool, "unrelated", {"appointment_id": "x"})

        markers = await store.list_all()

        assert [m.appointment_id for m in markers] == ["evt-1"]
        assert await store.get("reminder::broken::30") is None


class TestLoadJsonb:
    def test_passthrough(self):
        assert load_jsonb({"a": 1}) == {"a": 1}

    def test_text(self):
        assert load_jsonb('{"a": 1}') == {"a": 1}
