"""Resolution of free-text search criteria to existing appointments.

Cancel, reschedule and the per-user listing all go through the same
predicate: ``title_predicate(c) AND identity_predicate(c)``. Each half is
vacuously true when its fields are absent, so empty criteria match every
non-cancelled candidate.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from concierge.booking.errors import AmbiguousMatchError, NotFoundError
from concierge.booking.models import Appointment, SearchCriteria

Predicate = Callable[[Appointment], bool]

DEFAULT_DISPLAY_CAP = 5


def _searchable_text(appt: Appointment) -> str:
    parts = [appt.description or ""]
    if appt.client is not None:
        parts.append(appt.client.search_text())
    return "\n".join(parts).lower()


def title_predicate(criteria: SearchCriteria) -> Predicate:
    if not criteria.title:
        return lambda appt: True
    needle = criteria.title.lower()
    if criteria.exact_match:
        return lambda appt: appt.title.lower() == needle
    return lambda appt: needle in appt.title.lower()


def identity_predicate(criteria: SearchCriteria) -> Predicate:
    if not criteria.has_identity:
        return lambda appt: True

    name = criteria.name.lower() if criteria.name else None
    email = criteria.email.lower() if criteria.email else None
    phone = criteria.phone

    def _matches(appt: Appointment) -> bool:
        text = _searchable_text(appt)
        if name and (name in appt.title.lower() or name in text):
            return True
        if email:
            if any(a.email.lower() == email for a in appt.attendees):
                return True
            if email in text:
                return True
        if phone and phone.lower() in text:
            return True
        return False

    return _matches


def combined_predicate(criteria: SearchCriteria) -> Predicate:
    by_title = title_predicate(criteria)
    by_identity = identity_predicate(criteria)
    return lambda appt: by_title(appt) and by_identity(appt)


class MatchOutcome(StrEnum):
    NOT_FOUND = "not_found"
    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"


@dataclass
class MatchResult:
    outcome: MatchOutcome
    matches: list[Appointment] = field(default_factory=list)
    total: int = 0

    @property
    def appointment(self) -> Appointment | None:
        if self.outcome is MatchOutcome.UNIQUE:
            return self.matches[0]
        return None


def filter_matches(
    candidates: Iterable[Appointment], criteria: SearchCriteria
) -> list[Appointment]:
    """Every non-cancelled candidate accepted by the combined predicate."""
    predicate = combined_predicate(criteria)
    return [appt for appt in candidates if not appt.is_cancelled and predicate(appt)]


def match(
    candidates: Iterable[Appointment],
    criteria: SearchCriteria,
    *,
    display_cap: int = DEFAULT_DISPLAY_CAP,
) -> MatchResult:
    matches = filter_matches(candidates, criteria)
    if not matches:
        return MatchResult(MatchOutcome.NOT_FOUND)
    if len(matches) == 1:
        return MatchResult(MatchOutcome.UNIQUE, matches, 1)
    return MatchResult(MatchOutcome.AMBIGUOUS, matches[:display_cap], len(matches))


def resolve(
    candidates: Iterable[Appointment],
    criteria: SearchCriteria,
    *,
    display_cap: int = DEFAULT_DISPLAY_CAP,
) -> Appointment:
    """Return the single matching appointment.

    Raises:
        NotFoundError: nothing matched.
        AmbiguousMatchError: more than one candidate matched.
    """
    result = match(candidates, criteria, display_cap=display_cap)
    if result.outcome is MatchOutcome.NOT_FOUND:
        raise NotFoundError(
            "No appointment matches the search criteria",
            criteria=criteria.describe(),
        )
    if result.outcome is MatchOutcome.AMBIGUOUS:
        raise AmbiguousMatchError(result.matches, result.total)
    return result.matches[0]
