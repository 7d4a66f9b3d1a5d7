# classroom_scheduler/db/session.py
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.db.base import Base

# Import ORM models so that Base.metadata is aware of them
from classroom_scheduler.models.user import User  # noqa: F401
from classroom_scheduler.models.course import Course  # noqa: F401
from classroom_scheduler.models.group import Group, GroupMember, MeetingGroup  # noqa: F401
from classroom_scheduler.models.scheduled_meeting import ScheduledMeeting  # noqa: F401
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence  # noqa: F401
from classroom_scheduler.models.attendance_record import AttendanceRecord  # noqa: F401

# Detect if we're running under pytest
IS_TEST = "PYTEST_CURRENT_TEST" in os.environ


def build_engine(url: str | None = None, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for `url` (defaults to settings.DB_URL).

    Extra keyword arguments are passed straight to `create_async_engine`,
    e.g. `poolclass=StaticPool` for in-memory SQLite.
    """
    settings = get_settings()
    return create_async_engine(
        url or settings.DB_URL,
        echo=settings.DB_ECHO,
        future=True,
        **kwargs,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )


# ---------------------------------------------------------------------------
# Main application engine + session factory
# ---------------------------------------------------------------------------
@lru_cache()
def get_engine() -> AsyncEngine:
    """
    Process-wide engine built from settings.

    Under pytest, NullPool avoids reusing connections across event loops.
    """
    if IS_TEST:
        return build_engine(poolclass=NullPool)
    return build_engine()


@lru_cache()
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(get_engine())


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Provide an AsyncSession bound to the main engine.

    The session is closed when the block exits; committing is left to the
    service functions, which own their transactions.
    """
    async with get_sessionmaker()() as session:
        yield session


async def init_db_for_startup(engine: AsyncEngine | None = None) -> None:
    """
    Create any missing tables.

    Safe to call on every process start. Typically you'd eventually replace
    this with Alembic migrations.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def reset_db(engine: AsyncEngine | None = None) -> None:
    """
    TEST-ONLY: drop all tables and recreate them from the current models.

    Do NOT call this from production code. Only from tests/fixtures.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
