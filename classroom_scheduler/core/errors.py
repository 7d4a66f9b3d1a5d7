# classroom_scheduler/core/errors.py
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from classroom_scheduler.schemas.booking import Conflict


class SchedulingError(Exception):
    """
    Base class for all errors raised by the scheduling core.
    """


class InvalidRuleError(SchedulingError):
    """
    Raised when raw recurrence input (or the scheduling fields around
    it) is malformed. Always raised before anything is persisted.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class WindowExhaustionError(SchedulingError):
    """
    Raised when an expansion would produce more dates than the configured
    safety cap, e.g. an unterminated rule expanded without an upper bound.
    """

    def __init__(self, limit: int, meeting_id: str | None = None) -> None:
        self.limit = limit
        self.meeting_id = meeting_id
        target = f" for meeting {meeting_id}" if meeting_id else ""
        super().__init__(
            f"Occurrence expansion{target} exceeded the safety cap of {limit} dates"
        )


class ConflictError(SchedulingError):
    """
    Raised by callers that must abort a write when the booking validator
    reports a conflict. Carries the structured conflict decision.
    """

    def __init__(self, conflict: "Conflict") -> None:
        self.conflict = conflict
        super().__init__(conflict.detail)


class OccurrenceStateError(SchedulingError):
    """
    Raised when a mutation is not allowed for the occurrence's current state.
    """


class MeetingNotFoundError(LookupError):
    def __init__(self, meeting_id: str) -> None:
        self.meeting_id = meeting_id
        super().__init__(f"Meeting with id={meeting_id} not found")


class OccurrenceNotFoundError(LookupError):
    def __init__(self, occurrence_id: str) -> None:
        self.occurrence_id = occurrence_id
        super().__init__(f"Occurrence with id={occurrence_id} not found")
