"""Error taxonomy for booking operations.

Every error carries a ``status`` string that the tool surface puts straight
into its response payload, plus optional remediation ``guidance``.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from concierge.booking.models import Appointment


class BookingError(Exception):
    """Base class for all booking failures surfaced to callers."""

    status = "error"

    def __init__(self, message: str, *, guidance: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.guidance = guidance


class ValidationError(BookingError):
    """Malformed date, time, phone or email, or missing search criteria."""

    status = "validation_error"


class ParseError(ValidationError):
    """A date expression could not be resolved to a calendar date."""

    def __init__(self, text: Any, reason: str | None = None) -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Could not understand the date {text!r}{detail}",
            guidance=(
                "Use YYYY-MM-DD, or a relative form such as 'today', 'tomorrow', "
                "'in 3 days', '2 days ago', 'next week' or 'next month'."
            ),
        )
        self.text = text


class NotFoundError(BookingError):
    """No appointment matched the search criteria."""

    status = "not_found"

    def __init__(self, message: str, *, criteria: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            guidance=(
                "Check the spelling of the title or name, try a partial title, or search "
                "by email or phone instead."
            ),
        )
        self.criteria = criteria or {}


class AmbiguousMatchError(BookingError):
    """More than one appointment matched; carries a capped candidate list."""

    status = "ambiguous"

    def __init__(self, candidates: list[Appointment], total: int) -> None:
        super().__init__(
            f"Found {total} matching appointments; please be more specific",
            guidance="Add the date, the exact title, or the client's email to narrow the search.",
        )
        self.candidates = candidates
        self.total = total


class ConflictError(BookingError):
    """The requested slot overlaps an existing appointment or its buffer."""

    status = "conflict"


class UpstreamErrorKind(enum.StrEnum):
    """Classification of calendar service failures."""

    BAD_REQUEST = "bad_request"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"


_KIND_BY_STATUS = {
    400: UpstreamErrorKind.BAD_REQUEST,
    401: UpstreamErrorKind.AUTH,
    403: UpstreamErrorKind.FORBIDDEN,
    404: UpstreamErrorKind.NOT_FOUND,
    409: UpstreamErrorKind.CONFLICT,
}

_GUIDANCE_BY_KIND = {
    UpstreamErrorKind.BAD_REQUEST: "The calendar service rejected the request as invalid.",
    UpstreamErrorKind.AUTH: (
        "Calendar authorization failed; re-authenticate and refresh the stored credentials."
    ),
    UpstreamErrorKind.FORBIDDEN: (
        "Permission denied; the configured account cannot modify this calendar."
    ),
    UpstreamErrorKind.NOT_FOUND: (
        "The appointment no longer exists; it may already have been cancelled."
    ),
    UpstreamErrorKind.CONFLICT: (
        "The appointment was modified by another process; fetch it again and retry."
    ),
    UpstreamErrorKind.UNAVAILABLE: "The calendar service is unavailable; try again later.",
}


class UpstreamError(BookingError):
    """The calendar service failed; never retried automatically."""

    status = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        kind: UpstreamErrorKind,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, guidance=_GUIDANCE_BY_KIND[kind])
        self.kind = kind
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, message: str) -> UpstreamError:
        kind = _KIND_BY_STATUS.get(status_code, UpstreamErrorKind.UNAVAILABLE)
        return cls(message, kind=kind, status_code=status_code)

    @classmethod
    def from_exception(cls, exc: Exception) -> UpstreamError:
        """Classify a calendar provider exception.

        Request errors carry an HTTP ``status_code``. Credential and token
        refresh failures have none and are treated as auth failures.
        """
        status_code = getattr(exc, "status_code", None)
        if isinstance(status_code, int):
            return cls.from_status(status_code, str(exc))
        from concierge.modules.calendar import CalendarCredentialError

        if isinstance(exc, CalendarCredentialError):
            return cls(str(exc), kind=UpstreamErrorKind.AUTH)
        return cls(str(exc), kind=UpstreamErrorKind.UNAVAILABLE)


class PartialFailureError(BookingError):
    """Reschedule created the replacement but could not remove the original.

    Both appointments exist in the calendar until someone removes the
    original by hand (or the compensating delete succeeded, in which case
    :class:`RescheduleAbortedError` is raised instead).
    """

    status = "partial_failure"

    def __init__(
        self,
        message: str,
        *,
        original: Appointment,
        replacement: Appointment,
        compensated: bool = False,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message,
            guidance=(
                f"Manually delete the original appointment '{original.title}' "
                f"(id {original.appointment_id}) to avoid a duplicate booking."
            ),
        )
        self.original = original
        self.replacement = replacement
        self.compensated = compensated
        self.cause = cause


class RescheduleAbortedError(BookingError):
    """Strict reschedule rolled back: the replacement was removed again."""

    status = "aborted"

    def __init__(self, message: str, *, original: Appointment) -> None:
        super().__init__(
            message,
            guidance="The original appointment is unchanged; retry the reschedule later.",
        )
        self.original = original
