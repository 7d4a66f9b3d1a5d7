# tests/test_session.py
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import inspect, literal, select
from sqlalchemy.exc import IntegrityError, StatementError
from sqlalchemy.pool import StaticPool

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.db.session import (
    build_engine,
    get_sessionmaker,
    init_db_for_startup,
    session_scope,
)
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.models.scheduled_meeting import ScheduledMeeting


async def _add_meeting(db, teacher, start: datetime) -> ScheduledMeeting:
    meeting = ScheduledMeeting(
        title="Physics",
        start_time=start,
        duration_minutes=45,
        created_by=teacher.id,
    )
    db.add(meeting)
    await db.commit()
    return meeting


@pytest.mark.asyncio
async def test_init_db_creates_all_tables():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    try:
        await init_db_for_startup(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    finally:
        await engine.dispose()

    assert {
        "user",
        "course",
        "group",
        "group_member",
        "scheduled_meeting",
        "meeting_group",
        "meeting_occurrence",
        "attendance_record",
    } <= set(tables)


@pytest.mark.asyncio
async def test_timestamps_round_trip_as_utc_with_millisecond_precision(db, teacher):
    start = datetime(2024, 1, 1, 9, 0, 0, 123456, tzinfo=timezone.utc)
    meeting = await _add_meeting(db, teacher, start)
    meeting_id = meeting.id
    db.expunge_all()

    result = await db.execute(select(ScheduledMeeting).where(ScheduledMeeting.id == meeting_id))
    loaded = result.scalar_one()

    assert loaded.start_time == datetime(2024, 1, 1, 9, 0, 0, 123000, tzinfo=timezone.utc)
    assert loaded.start_time.tzinfo is not None


@pytest.mark.asyncio
async def test_naive_timestamps_are_rejected(db, teacher):
    with pytest.raises(StatementError):
        await _add_meeting(db, teacher, datetime(2024, 1, 1, 9, 0))


@pytest.mark.asyncio
async def test_one_occurrence_per_meeting_and_date(db, teacher):
    meeting = await _add_meeting(db, teacher, datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))
    db.add(MeetingOccurrence(meeting_id=meeting.id, scheduled_date=date(2024, 1, 1)))
    await db.commit()

    db.add(MeetingOccurrence(meeting_id=meeting.id, scheduled_date=date(2024, 1, 1)))
    with pytest.raises(IntegrityError):
        await db.commit()


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_GENERATED_OCCURRENCES", "25")
    monkeypatch.setenv("DEFAULT_TIME_ZONE", "Europe/Madrid")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.MAX_GENERATED_OCCURRENCES == 25
        assert settings.DEFAULT_TIME_ZONE == "Europe/Madrid"
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_session_scope_binds_to_the_configured_database(monkeypatch):
    monkeypatch.setenv("DB_URL", "sqlite+aiosqlite://")
    get_settings.cache_clear()
    get_sessionmaker.cache_clear()
    try:
        async with session_scope() as session:
            assert str(session.bind.url) == "sqlite+aiosqlite://"
            result = await session.execute(select(literal(1)))
            assert result.scalar_one() == 1
        await get_sessionmaker().kw["bind"].dispose()
    finally:
        get_sessionmaker.cache_clear()
        get_settings.cache_clear()
