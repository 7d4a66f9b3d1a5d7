# classroom_scheduler/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models of the scheduling core.

    Models are registered on `Base.metadata` by `classroom_scheduler.db.session`,
    which imports every model module before any schema is created.
    """
    pass
