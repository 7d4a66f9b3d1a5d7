# classroom_scheduler/models/meeting_occurrence.py
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    ForeignKey,
    Index,
    SmallInteger,
    String,
    UniqueConstraint,
)

from classroom_scheduler.db.base import Base
from classroom_scheduler.db.types import UTCDateTime, new_id, utcnow


class MeetingOccurrence(Base):
    """
    One calendar instance of a scheduled meeting.

    Rows are created by reconciliation and never hard-deleted: a rule change
    soft-deletes rows that no longer match (`is_retired=True`), while a user
    deleting an occurrence sets only `deleted_at`.
    """

    __tablename__ = "meeting_occurrence"

    id = Column(String(36), primary_key=True, default=new_id)

    meeting_id = Column(
        String(36),
        ForeignKey("scheduled_meeting.id"),
        nullable=False,
    )
    scheduled_date = Column(Date, nullable=False)

    # Only set when the occurrence started late
    actual_start_time = Column(UTCDateTime, nullable=True)
    delay_minutes = Column(SmallInteger, nullable=True)

    is_cancelled = Column(Boolean, nullable=False, default=False)
    attendance_taken = Column(Boolean, nullable=False, default=False)
    is_retired = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "meeting_id",
            "scheduled_date",
            name="uq_meeting_occurrence_meeting_date",
        ),
        Index("idx_meeting_occurrence_created_at", "created_at"),
        Index("idx_meeting_occurrence_updated_at", "updated_at"),
        Index("idx_meeting_occurrence_deleted_at", "deleted_at"),
        Index("idx_meeting_occurrence_scheduled_date", "scheduled_date"),
        Index("idx_meeting_occurrence_meeting_id", "meeting_id"),
        Index("idx_meeting_occurrence_actual_start_time", "actual_start_time"),
        Index("idx_meeting_occurrence_delay_minutes", "delay_minutes"),
    )

    def __repr__(self) -> str:
        return (
            f"<MeetingOccurrence id={self.id} meeting_id={self.meeting_id} "
            f"date={self.scheduled_date} cancelled={self.is_cancelled}>"
        )
