# classroom_scheduler/models/course.py
from sqlalchemy import Column, ForeignKey, Index, String, Text

from classroom_scheduler.db.base import Base
from classroom_scheduler.db.types import UTCDateTime, new_id, utcnow


class Course(Base):
    """
    Course container owned by a teacher; groups and meetings hang off it.
    """

    __tablename__ = "course"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("user.id"), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_course_created_at", "created_at"),
        Index("idx_course_updated_at", "updated_at"),
        Index("idx_course_deleted_at", "deleted_at"),
        Index("idx_course_title", "title"),
    )

    def __repr__(self) -> str:
        return f"<Course id={self.id} title={self.title!r}>"
