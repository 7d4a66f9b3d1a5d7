# classroom_scheduler/models/group.py
from sqlalchemy import Column, ForeignKey, Index, String

from classroom_scheduler.db.base import Base
from classroom_scheduler.db.types import UTCDateTime, new_id, utcnow


class Group(Base):
    """
    Sub-cohort within a course, e.g. 'Beginner A'.

    Groups are the audience unit for meetings: two meetings compete for the
    same people when their groups overlap or share members.
    """

    __tablename__ = "group"

    id = Column(String(36), primary_key=True, default=new_id)
    course_id = Column(String(36), ForeignKey("course.id"), nullable=False)
    name = Column(String(100), nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_group_created_at", "created_at"),
        Index("idx_group_updated_at", "updated_at"),
        Index("idx_group_deleted_at", "deleted_at"),
        Index("idx_group_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<Group id={self.id} name={self.name!r}>"


class GroupMember(Base):
    """
    Junction of users to groups.
    """

    __tablename__ = "group_member"

    user_id = Column(String(36), ForeignKey("user.id"), primary_key=True)
    group_id = Column(String(36), ForeignKey("group.id"), primary_key=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_group_member_created_at", "created_at"),)


class MeetingGroup(Base):
    """
    Associates a meeting with zero, one or many groups.
    """

    __tablename__ = "meeting_group"

    meeting_id = Column(String(36), ForeignKey("scheduled_meeting.id"), primary_key=True)
    group_id = Column(String(36), ForeignKey("group.id"), primary_key=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_meeting_group_created_at", "created_at"),)
