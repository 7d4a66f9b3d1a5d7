# classroom_scheduler/db/types.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime
from sqlalchemy.dialects import postgresql
from sqlalchemy.types import TypeDecorator


def new_id() -> str:
    """
    Generate a primary key for text-keyed tables.
    """
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column stored as naive UTC with millisecond precision.

    Values are accepted as timezone-aware datetimes (naive values are
    rejected) and always come back as aware UTC datetimes, regardless of
    whether the backend keeps zone information (SQLite does not).
    """

    impl = DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.TIMESTAMP(precision=3))
        return dialect.type_descriptor(DateTime())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime columns require timezone-aware datetimes")
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.replace(microsecond=(value.microsecond // 1000) * 1000)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
