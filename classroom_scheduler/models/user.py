# classroom_scheduler/models/user.py
from sqlalchemy import Column, Index, String

from classroom_scheduler.db.base import Base
from classroom_scheduler.db.types import UTCDateTime, new_id, utcnow


class User(Base):
    """
    Platform user (teacher or student).

    Only the identity columns the scheduling core references are declared;
    authentication state lives elsewhere.
    """

    __tablename__ = "user"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    email = Column(String(256), nullable=False, unique=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_user_created_at", "created_at"),
        Index("idx_user_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email}>"
