# tests/conftest.py
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from classroom_scheduler.db.session import build_engine, build_sessionmaker, reset_db
from classroom_scheduler.models.course import Course
from classroom_scheduler.models.group import Group, GroupMember
from classroom_scheduler.models.user import User

TEST_DB_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture
async def engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps the single in-memory connection alive so every session
    in the test sees the same schema and data.
    """
    test_engine = build_engine(
        TEST_DB_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await reset_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_factory = build_sessionmaker(engine)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def teacher(db) -> User:
    user = User(name="Teacher", email="teacher@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def course(db, teacher) -> Course:
    row = Course(title="Algebra I", created_by=teacher.id)
    db.add(row)
    await db.commit()
    return row


@pytest_asyncio.fixture
async def make_user(db):
    async def _make(name: str) -> User:
        user = User(name=name, email=f"{name.lower()}@example.com")
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def make_group(db, course):
    async def _make(name: str, members=()) -> Group:
        group = Group(course_id=course.id, name=name)
        db.add(group)
        await db.flush()
        for user in members:
            db.add(GroupMember(user_id=user.id, group_id=group.id))
        await db.commit()
        return group

    return _make


@pytest.fixture
def now() -> datetime:
    """Fixed "current time", well before the meetings the tests book."""
    return datetime(2023, 12, 1, 12, 0, tzinfo=timezone.utc)
