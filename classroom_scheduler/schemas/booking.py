# classroom_scheduler/schemas/booking.py
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConflictReason(str, Enum):
    """
    Why a candidate booking was refused.
    """

    OVERLAP = "overlap"
    MIN_NOTICE = "min_notice"
    AMBIGUOUS_AUDIENCE = "ambiguous_audience"


class AudienceMatch(str, Enum):
    """
    How two meetings' audiences relate.

    AMBIGUOUS is used whenever membership cannot be established (no groups,
    unknown or deleted groups) and is treated as overlapping.
    """

    SHARED = "shared"
    AMBIGUOUS = "ambiguous"
    DISJOINT = "disjoint"


class BookingCandidate(BaseModel):
    """
    A proposed meeting instance to check against the calendar.
    """

    meeting_id: str | None = Field(
        None,
        description="Meeting being booked; its own occurrences are not compared against.",
    )
    occurrence_id: str | None = Field(
        None,
        description="Occurrence being moved (delay); excluded from the comparison set.",
    )
    group_ids: list[str] = Field(default_factory=list)
    start_time: datetime = Field(..., description="Timezone-aware start instant.")
    duration_minutes: int = Field(..., ge=1)
    prep_buffer: int = Field(0, ge=0)
    follow_up_buffer: int = Field(0, ge=0)
    min_notice: int = Field(0, ge=0)

    @field_validator("start_time")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("start_time must be timezone-aware")
        return value.astimezone(timezone.utc)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def blocked_window(self) -> tuple[datetime, datetime]:
        """Half-open [start - prep, end + follow_up) interval in UTC."""
        return (
            self.start_time - timedelta(minutes=self.prep_buffer),
            self.end_time + timedelta(minutes=self.follow_up_buffer),
        )


class BookedSlot(BaseModel):
    """
    An existing occurrence as seen by the validator, with its buffered window
    and its audience relation to the candidate already resolved.
    """

    model_config = ConfigDict(frozen=True)

    occurrence_id: str
    meeting_id: str
    scheduled_date: date
    start_utc: datetime
    end_utc: datetime
    blocked_start: datetime
    blocked_end: datetime
    audience: AudienceMatch


class Allow(BaseModel):
    kind: Literal["allow"] = "allow"


class Conflict(BaseModel):
    """
    A refused booking. For OVERLAP / AMBIGUOUS_AUDIENCE the clashing
    occurrence and its blocked window are included.
    """

    kind: Literal["conflict"] = "conflict"
    reason: ConflictReason
    detail: str
    meeting_id: str | None = None
    occurrence_id: str | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None


BookingDecision = Annotated[Union[Allow, Conflict], Field(discriminator="kind")]
