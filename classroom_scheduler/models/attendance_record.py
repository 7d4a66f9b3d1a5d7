# classroom_scheduler/models/attendance_record.py
from sqlalchemy import Boolean, Column, ForeignKey, String

from classroom_scheduler.db.base import Base
from classroom_scheduler.db.types import UTCDateTime, utcnow


class AttendanceRecord(Base):
    """
    Per-user attendance for a single occurrence.

    Keyed by (occurrence_id, user_id): re-recording attendance overwrites the
    row instead of adding a second one.
    """

    __tablename__ = "attendance_record"

    occurrence_id = Column(
        String(36),
        ForeignKey("meeting_occurrence.id"),
        primary_key=True,
    )
    user_id = Column(String(36), ForeignKey("user.id"), primary_key=True)
    present = Column(Boolean, nullable=False)
    recorded_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<AttendanceRecord occurrence_id={self.occurrence_id} "
            f"user_id={self.user_id} present={self.present}>"
        )
