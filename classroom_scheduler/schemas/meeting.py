# classroom_scheduler/schemas/meeting.py
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.schemas.recurrence import RecurrenceRule
from classroom_scheduler.services.rule_parser import parse_recurrence_rule


def _check_time_zone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown IANA time zone {value!r}") from None
    return value


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


# --------------------------------------------------------------------------
# Typed JSON documents
# --------------------------------------------------------------------------

class MeetingMetadata(BaseModel):
    """
    Typed replacement for the free-form `metadata` JSON column.

    Unknown top-level keys are rejected; anything provider-specific goes into
    `custom`.
    """

    model_config = ConfigDict(extra="forbid")

    join_link: str | None = Field(
        None,
        max_length=2096,
        description="URL participants use to join (video call, classroom link).",
        examples=["https://meet.example.com/abc-defg-hij"],
    )
    agenda: str | None = Field(None, description="Free-text agenda.")
    files: list[str] = Field(
        default_factory=list,
        description="Attached file URLs or storage keys.",
    )
    custom: dict[str, Any] = Field(
        default_factory=dict,
        description="Integration-specific values.",
    )


# --------------------------------------------------------------------------
# Write schemas
# --------------------------------------------------------------------------

class MeetingCreate(BaseModel):
    """
    Payload for creating a scheduled meeting.

    `recurrence_rule` is kept raw here (document or RRULE string) and parsed
    by the service so that rule errors surface as InvalidRuleError with the
    offending field.
    """

    title: str = Field(..., min_length=1, max_length=120, examples=["Algebra I - Group A"])
    location: str | None = Field(None, max_length=256, examples=["Room 204"])
    time_zone: str = Field(
        default_factory=lambda: get_settings().DEFAULT_TIME_ZONE,
        max_length=40,
        examples=["Europe/Madrid"],
    )
    start_time: datetime = Field(
        ...,
        description="Start of the first occurrence (timezone-aware).",
        examples=["2024-01-08T09:00:00+01:00"],
    )
    duration_minutes: int = Field(..., ge=1, le=1440, examples=[60])

    is_recurring: bool = Field(False)
    recurrence_rule: dict[str, Any] | str | None = Field(
        None,
        description="Recurrence document or RRULE string; required when is_recurring.",
        examples=[{"frequency": "weekly", "by_day": ["MO"]}],
    )
    end_date: date | None = Field(
        None,
        description="Last date (inclusive) of the series.",
    )

    prep_buffer: int = Field(0, ge=0, le=1440, description="Minutes blocked before start.")
    follow_up_buffer: int = Field(0, ge=0, le=1440, description="Minutes blocked after end.")
    min_notice: int = Field(0, ge=0, le=32767, description="Minimum booking lead time in minutes.")

    metadata: MeetingMetadata | None = None

    created_by: str = Field(..., min_length=1, description="Id of the creating user.")
    group_ids: list[str] = Field(
        default_factory=list,
        description="Groups forming the meeting's audience.",
    )

    _check_zone = field_validator("time_zone")(_check_time_zone)
    _check_start = field_validator("start_time")(_require_aware)


class RecurrenceUpdate(BaseModel):
    """
    Changes to a meeting's recurrence fields. Only fields that are set are
    applied; `recurrence_rule=None` together with `is_recurring=False` turns
    a series back into a single meeting.
    """

    is_recurring: bool | None = None
    recurrence_rule: dict[str, Any] | str | None = None
    end_date: date | None = None


# --------------------------------------------------------------------------
# Read schemas
# --------------------------------------------------------------------------

class MeetingRead(BaseModel):
    """
    Public representation of a scheduled meeting.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    location: str | None = None
    time_zone: str
    start_time: datetime
    duration_minutes: int
    is_recurring: bool
    recurrence_rule: RecurrenceRule | None = None
    end_date: date | None = None
    prep_buffer: int
    follow_up_buffer: int
    min_notice: int
    meeting_metadata: MeetingMetadata | None = None
    created_by: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def _parse_rule(cls, value: Any) -> RecurrenceRule | None:
        return None if value is None else parse_recurrence_rule(value)


class MeetingSchedule(BaseModel):
    """
    The scheduling view of a meeting: everything occurrence generation,
    reconciliation and booking validation need, nothing else.

    Built straight from a `ScheduledMeeting` row via `model_validate`.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str | None = None
    time_zone: str = "UTC"
    start_time: datetime
    duration_minutes: int = Field(..., ge=1)
    is_recurring: bool = False
    recurrence_rule: RecurrenceRule | None = None
    end_date: date | None = None
    prep_buffer: int = Field(0, ge=0)
    follow_up_buffer: int = Field(0, ge=0)
    min_notice: int = Field(0, ge=0)

    _check_zone = field_validator("time_zone")(_check_time_zone)

    @field_validator("start_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Rows read back from the DB are UTC even if the driver drops tzinfo
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def _parse_rule(cls, value: Any) -> RecurrenceRule | None:
        return None if value is None else parse_recurrence_rule(value)

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def local_start(self) -> datetime:
        return self.start_time.astimezone(self.zone)

    @property
    def anchor_date(self) -> date:
        """Local calendar date of the first occurrence."""
        return self.local_start.date()

    @property
    def wall_time(self) -> time:
        """Local wall-clock start time every occurrence keeps."""
        return self.local_start.time()

    @property
    def recurs(self) -> bool:
        return self.is_recurring and self.recurrence_rule is not None


class DateWindow(BaseModel):
    """
    Inclusive calendar-date window in the meeting's local zone.

    `end=None` means unbounded; expansion then relies on the rule's own
    termination (count/until/end_date) or the safety cap.
    """

    model_config = ConfigDict(frozen=True)

    start: date
    end: date | None = None

    @model_validator(mode="after")
    def _check_order(self) -> "DateWindow":
        if self.end is not None and self.end < self.start:
            raise ValueError("window end must be greater than or equal to start")
        return self

    def contains(self, value: date) -> bool:
        return value >= self.start and (self.end is None or value <= self.end)


class OccurrenceDate(BaseModel):
    """
    One generated occurrence: its calendar date plus the concrete instants
    derived from the meeting's zone, duration and buffers.
    """

    model_config = ConfigDict(frozen=True)

    scheduled_date: date = Field(..., examples=["2024-01-08"])
    local_start: datetime = Field(..., description="Start in the meeting's zone.")
    start_utc: datetime
    end_utc: datetime
    blocked_start_utc: datetime = Field(..., description="start_utc minus prep buffer.")
    blocked_end_utc: datetime = Field(..., description="end_utc plus follow-up buffer.")
    within_min_notice: bool = Field(
        False,
        description="True when the start is closer to `now` than the meeting's minimum notice.",
    )

    @property
    def duration(self) -> timedelta:
        return self.end_utc - self.start_utc
