# classroom_scheduler/models/scheduled_meeting.py
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    ForeignKey,
    Index,
    SmallInteger,
    String,
)

from classroom_scheduler.db.base import Base
from classroom_scheduler.db.types import UTCDateTime, new_id, utcnow


class ScheduledMeeting(Base):
    """
    Meeting definition: identity plus the scheduling fields that drive
    occurrence generation (zone, first start, duration, recurrence, buffers).

    Occurrences are owned by id lookup (`MeetingOccurrence.meeting_id`), not
    through an ORM relationship.
    """

    __tablename__ = "scheduled_meeting"

    id = Column(String(36), primary_key=True, default=new_id)

    title = Column(String(120), nullable=False)
    location = Column(String(256), nullable=True)
    time_zone = Column(String(40), nullable=False, default="UTC")

    # UTC instant of the first occurrence
    start_time = Column(UTCDateTime, nullable=False)
    duration_minutes = Column(SmallInteger, nullable=False)

    is_recurring = Column(Boolean, nullable=False, default=False)
    recurrence_rule = Column(JSON, nullable=True)
    end_date = Column(Date, nullable=True)

    prep_buffer = Column(SmallInteger, nullable=False, default=0)
    follow_up_buffer = Column(SmallInteger, nullable=False, default=0)
    min_notice = Column(SmallInteger, nullable=False, default=0)

    # `metadata` is reserved on declarative classes
    meeting_metadata = Column("metadata", JSON, nullable=True)

    created_by = Column(String(36), ForeignKey("user.id"), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_scheduled_meeting_created_at", "created_at"),
        Index("idx_scheduled_meeting_updated_at", "updated_at"),
        Index("idx_scheduled_meeting_deleted_at", "deleted_at"),
        Index("idx_scheduled_meeting_start_time", "start_time"),
        Index("idx_scheduled_meeting_title", "title"),
        Index("idx_scheduled_meeting_location", "location"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScheduledMeeting id={self.id} title={self.title!r} "
            f"recurring={self.is_recurring}>"
        )
