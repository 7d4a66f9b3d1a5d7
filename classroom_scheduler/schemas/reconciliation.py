# classroom_scheduler/schemas/reconciliation.py
from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from classroom_scheduler.schemas.meeting import DateWindow


class OccurrenceState(BaseModel):
    """
    The part of a persisted occurrence row reconciliation looks at.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    scheduled_date: date
    is_cancelled: bool = False
    attendance_taken: bool = False
    is_retired: bool = False
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class ReconciliationPlan(BaseModel):
    """
    Result of diffing generated dates against existing rows.

    Every existing row lands in at most one of preserve/restore/retire;
    user-deleted rows land in none of them and are left alone.
    """

    model_config = ConfigDict(frozen=True)

    to_create: list[date] = Field(default_factory=list)
    to_preserve: list[OccurrenceState] = Field(default_factory=list)
    to_restore: list[OccurrenceState] = Field(default_factory=list)
    to_retire: list[OccurrenceState] = Field(default_factory=list)

    @property
    def has_writes(self) -> bool:
        return bool(self.to_create or self.to_restore or self.to_retire)


class ReconciliationResult(BaseModel):
    """
    Outcome of one reconciliation pass for a meeting.
    """

    meeting_id: str
    window: DateWindow | None = Field(
        None,
        description="Window that was generated; None when nothing was in range.",
    )
    created: list[date] = Field(default_factory=list)
    preserved: list[date] = Field(default_factory=list)
    restored: list[date] = Field(default_factory=list)
    retired: list[date] = Field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.restored) + len(self.retired)
