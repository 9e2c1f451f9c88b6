"""Free-slot computation under working-hour and buffer policy.

All arithmetic happens on naive local wall-clock datetimes. Busy intervals
come from appointments read back from the calendar store and are converted
with :func:`~concierge.booking.timezone.to_display_form` first.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum

from concierge.booking.models import DEFAULT_WORKING_WINDOWS, Appointment, Slot, WorkingWindow
from concierge.booking.timezone import DEFAULT_UTC_OFFSET, to_display_form

Interval = tuple[datetime, datetime]


class SlotStepPolicy(StrEnum):
    """How far the slot cursor advances after each candidate."""

    BLOCK = "block"  # duration + buffer
    FIXED = "fixed"  # fixed_step


@dataclass(frozen=True)
class BookingPolicy:
    duration: timedelta = timedelta(minutes=45)
    buffer: timedelta = timedelta(minutes=15)
    windows: Sequence[WorkingWindow] = field(default=DEFAULT_WORKING_WINDOWS)
    step_policy: SlotStepPolicy = SlotStepPolicy.BLOCK
    fixed_step: timedelta = timedelta(minutes=30)

    @property
    def step(self) -> timedelta:
        if self.step_policy is SlotStepPolicy.FIXED:
            return self.fixed_step
        return self.duration + self.buffer


def busy_intervals(
    appointments: Iterable[Appointment],
    *,
    exclude_id: str | None = None,
    offset: timedelta = DEFAULT_UTC_OFFSET,
) -> list[Interval]:
    """Local wall-clock busy intervals, sorted by start.

    Cancelled and all-day appointments never block a slot.
    """
    intervals: list[Interval] = []
    for appt in appointments:
        if appt.is_cancelled or appt.all_day:
            continue
        if exclude_id is not None and appt.appointment_id == exclude_id:
            continue
        start = to_display_form(appt.start_at, offset=offset)
        end = to_display_form(appt.end_at, offset=offset)
        intervals.append((start, end))
    intervals.sort()
    return intervals


def is_slot_available(
    start: datetime,
    end: datetime,
    busy: Iterable[Interval],
    buffer: timedelta,
) -> bool:
    """True if ``[start, end + buffer)`` overlaps no busy interval.

    Intervals are half-open, so touching endpoints do not conflict.
    """
    padded_end = end + buffer
    for busy_start, busy_end in busy:
        if start < busy_end and busy_start < padded_end:
            return False
    return True


def enumerate_slots(
    day: date,
    busy: Sequence[Interval],
    policy: BookingPolicy,
) -> dict[str, list[Slot]]:
    """Free slots for *day*, grouped by working window in window order."""
    grouped: dict[str, list[Slot]] = {}
    for window in policy.windows:
        slots: list[Slot] = []
        cursor = datetime.combine(day, window.start)
        window_end = datetime.combine(day, window.end)
        while cursor + policy.duration + policy.buffer <= window_end:
            slot_end = cursor + policy.duration
            if is_slot_available(cursor, slot_end, busy, policy.buffer):
                slots.append(Slot(start=cursor, end=slot_end, label=window.label))
            cursor += policy.step
        grouped.setdefault(window.label, []).extend(slots)
    return grouped
