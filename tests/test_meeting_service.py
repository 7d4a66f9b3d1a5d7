# tests/test_meeting_service.py
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from pydantic import ValidationError
from sqlalchemy import func, select

from classroom_scheduler.core.errors import (
    ConflictError,
    InvalidRuleError,
    MeetingNotFoundError,
    OccurrenceNotFoundError,
    OccurrenceStateError,
)
from classroom_scheduler.models.attendance_record import AttendanceRecord
from classroom_scheduler.models.group import MeetingGroup
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.models.scheduled_meeting import ScheduledMeeting
from classroom_scheduler.schemas.attendance import AttendanceEntry
from classroom_scheduler.schemas.booking import ConflictReason
from classroom_scheduler.schemas.meeting import MeetingCreate, MeetingRead, RecurrenceUpdate
from classroom_scheduler.services.meeting_service import (
    cancel_occurrence,
    create_meeting,
    delay_occurrence,
    delete_occurrence,
    record_attendance,
    soft_delete_meeting,
    update_recurrence,
)

UTC = timezone.utc
MONDAY_9AM = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
TUESDAY_9AM = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def _payload(teacher, **overrides) -> MeetingCreate:
    values = dict(
        title="Algebra I - Group A",
        start_time=MONDAY_9AM,
        duration_minutes=60,
        is_recurring=True,
        recurrence_rule={"frequency": "weekly", "by_day": ["MO"]},
        end_date=date(2024, 1, 31),
        created_by=teacher.id,
    )
    values.update(overrides)
    return MeetingCreate(**values)


async def _rows(db, meeting_id: str) -> list[MeetingOccurrence]:
    result = await db.execute(
        select(MeetingOccurrence)
        .where(MeetingOccurrence.meeting_id == meeting_id)
        .order_by(MeetingOccurrence.scheduled_date)
    )
    return list(result.scalars().all())


async def _active_days(db, meeting_id: str) -> list[int]:
    return [r.scheduled_date.day for r in await _rows(db, meeting_id) if r.deleted_at is None]


async def _meeting_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(ScheduledMeeting))
    return result.scalar_one()


@pytest_asyncio.fixture
async def group_a(make_user, make_group):
    alice = await make_user("Alice")
    return await make_group("Group A", members=[alice])


@pytest_asyncio.fixture
async def students(make_user):
    return [await make_user("Alice"), await make_user("Bob")]


# ---------------------------------------------------------------------------
# create_meeting
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_create_meeting_materializes_occurrences(db, teacher, now, group_a):
    payload = _payload(
        teacher,
        group_ids=[group_a.id],
        metadata={"join_link": "https://meet.example.com/abc", "agenda": "Fractions"},
    )

    meeting = await create_meeting(db, payload, now=now)

    assert await _active_days(db, meeting.id) == [1, 8, 15, 22, 29]
    groups = await db.execute(
        select(MeetingGroup.group_id).where(MeetingGroup.meeting_id == meeting.id)
    )
    assert groups.scalars().all() == [group_a.id]

    read = MeetingRead.model_validate(meeting)
    assert read.recurrence_rule.by_day[0].value == "MO"
    assert read.meeting_metadata.join_link == "https://meet.example.com/abc"


@pytest.mark.asyncio
async def test_create_meeting_normalizes_rrule_strings(db, teacher, now):
    payload = _payload(teacher, recurrence_rule="RRULE:FREQ=WEEKLY;BYDAY=MO;COUNT=3", end_date=None)

    meeting = await create_meeting(db, payload, now=now)

    assert meeting.recurrence_rule == {
        "frequency": "weekly",
        "interval": 1,
        "by_day": ["MO"],
        "by_month_day": None,
        "count": 3,
        "until": None,
    }
    assert await _active_days(db, meeting.id) == [1, 8, 15]


@pytest.mark.asyncio
async def test_create_single_meeting(db, teacher, now):
    payload = _payload(teacher, is_recurring=False, recurrence_rule=None, end_date=None)

    meeting = await create_meeting(db, payload, now=now)

    assert await _active_days(db, meeting.id) == [1]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"recurrence_rule": None}, "recurrence_rule"),
        ({"is_recurring": False}, "is_recurring"),
        ({"end_date": date(2023, 12, 31)}, "end_date"),
        ({"recurrence_rule": {"frequency": "weekly", "interval": 0}}, "interval"),
    ],
)
async def test_create_meeting_rejects_inconsistent_recurrence(db, teacher, now, overrides, field):
    with pytest.raises(InvalidRuleError) as exc_info:
        await create_meeting(db, _payload(teacher, **overrides), now=now)

    assert exc_info.value.field == field
    assert await _meeting_count(db) == 0


def test_meeting_payload_rejects_naive_start_and_unknown_zone():
    with pytest.raises(ValidationError):
        MeetingCreate(
            title="x", start_time=datetime(2024, 1, 1, 9, 0), duration_minutes=30, created_by="u"
        )
    with pytest.raises(ValidationError):
        MeetingCreate(
            title="x",
            start_time=MONDAY_9AM,
            duration_minutes=30,
            time_zone="Mars/Olympus_Mons",
            created_by="u",
        )


@pytest.mark.asyncio
async def test_create_meeting_conflict_persists_nothing(db, teacher, now, group_a):
    await create_meeting(db, _payload(teacher, group_ids=[group_a.id]), now=now)

    clash = _payload(
        teacher,
        title="Geometry",
        start_time=datetime(2024, 1, 15, 9, 30, tzinfo=UTC),
        is_recurring=False,
        recurrence_rule=None,
        end_date=None,
        group_ids=[group_a.id],
    )
    with pytest.raises(ConflictError) as exc_info:
        await create_meeting(db, clash, now=now)

    assert exc_info.value.conflict.reason == ConflictReason.OVERLAP
    assert await _meeting_count(db) == 1


@pytest.mark.asyncio
async def test_create_meeting_inside_min_notice_is_refused(db, teacher, group_a):
    now = datetime(2024, 1, 1, 8, 30, tzinfo=UTC)
    payload = _payload(teacher, group_ids=[group_a.id], min_notice=60)

    with pytest.raises(ConflictError) as exc_info:
        await create_meeting(db, payload, now=now)

    assert exc_info.value.conflict.reason == ConflictReason.MIN_NOTICE


# ---------------------------------------------------------------------------
# update_recurrence / soft_delete_meeting
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_update_to_biweekly_retires_skipped_weeks(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)

    result = await update_recurrence(
        db,
        meeting.id,
        RecurrenceUpdate(recurrence_rule={"frequency": "weekly", "interval": 2, "by_day": ["MO"]}),
        now=now,
    )

    assert result.retired == [date(2024, 1, 8), date(2024, 1, 22)]
    assert result.created == []
    assert await _active_days(db, meeting.id) == [1, 15, 29]
    assert meeting.recurrence_rule["interval"] == 2


@pytest.mark.asyncio
async def test_turning_recurrence_off_keeps_only_the_first_date(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)

    await update_recurrence(db, meeting.id, RecurrenceUpdate(is_recurring=False), now=now)

    assert await _active_days(db, meeting.id) == [1]
    assert meeting.recurrence_rule is None


@pytest.mark.asyncio
async def test_extending_end_date_creates_new_occurrences(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)

    result = await update_recurrence(
        db, meeting.id, RecurrenceUpdate(end_date=date(2024, 2, 14)), now=now
    )

    assert result.created == [date(2024, 2, 5), date(2024, 2, 12)]


@pytest.mark.asyncio
async def test_invalid_update_is_rolled_back(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)
    meeting_id = meeting.id

    with pytest.raises(InvalidRuleError):
        await update_recurrence(
            db, meeting_id, RecurrenceUpdate(recurrence_rule={"frequency": "fortnightly"}), now=now
        )

    result = await db.execute(select(ScheduledMeeting).where(ScheduledMeeting.id == meeting_id))
    assert result.scalar_one().recurrence_rule["frequency"] == "weekly"


@pytest.mark.asyncio
async def test_update_that_would_double_book_is_refused(db, teacher, now, group_a):
    monday = await create_meeting(db, _payload(teacher, group_ids=[group_a.id]), now=now)
    monday_id = monday.id
    await create_meeting(
        db,
        _payload(
            teacher,
            title="Tuesday lab",
            start_time=TUESDAY_9AM,
            recurrence_rule={"frequency": "weekly", "by_day": ["TU"]},
            group_ids=[group_a.id],
        ),
        now=now,
    )

    with pytest.raises(ConflictError):
        await update_recurrence(
            db,
            monday_id,
            RecurrenceUpdate(recurrence_rule={"frequency": "weekly", "by_day": ["MO", "TU"]}),
            now=now,
        )

    assert await _active_days(db, monday_id) == [1, 8, 15, 22, 29]


@pytest.mark.asyncio
async def test_deleted_meeting_cannot_be_updated(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)
    await soft_delete_meeting(db, meeting.id, now=now)

    with pytest.raises(MeetingNotFoundError):
        await update_recurrence(db, meeting.id, RecurrenceUpdate(end_date=None), now=now)


# ---------------------------------------------------------------------------
# Occurrence mutations
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_delay_derives_delay_minutes(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher, time_zone="Europe/Madrid"), now=now)
    rows = await _rows(db, meeting.id)

    # scheduled 10:00 Madrid (09:00 UTC); started 10:15
    delayed = await delay_occurrence(
        db, rows[0].id, datetime(2024, 1, 1, 9, 15, tzinfo=UTC), now=now
    )

    assert delayed.delay_minutes == 15
    assert delayed.actual_start_time == datetime(2024, 1, 1, 9, 15, tzinfo=UTC)


@pytest.mark.asyncio
async def test_delay_rejects_bad_input_and_state(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)
    rows = await _rows(db, meeting.id)
    first_id, second_id = rows[0].id, rows[1].id

    with pytest.raises(ValueError):
        await delay_occurrence(db, first_id, datetime(2024, 1, 1, 9, 15), now=now)
    with pytest.raises(ValueError):
        await delay_occurrence(db, first_id, datetime(2024, 1, 1, 8, 45, tzinfo=UTC), now=now)

    await cancel_occurrence(db, second_id)
    with pytest.raises(OccurrenceStateError):
        await delay_occurrence(db, second_id, datetime(2024, 1, 8, 9, 15, tzinfo=UTC), now=now)


@pytest.mark.asyncio
async def test_delete_occurrence_twice_is_not_found(db, teacher, now):
    meeting = await create_meeting(db, _payload(teacher), now=now)
    rows = await _rows(db, meeting.id)

    deleted = await delete_occurrence(db, rows[0].id, now=now)

    assert deleted.deleted_at == now
    assert deleted.is_retired is False
    with pytest.raises(OccurrenceNotFoundError):
        await delete_occurrence(db, rows[0].id, now=now)


@pytest.mark.asyncio
async def test_record_attendance_upserts(db, teacher, now, students):
    alice, bob = students
    meeting = await create_meeting(db, _payload(teacher), now=now)
    occurrence_id = (await _rows(db, meeting.id))[0].id

    await record_attendance(
        db,
        occurrence_id,
        [AttendanceEntry(user_id=alice.id, present=True), AttendanceEntry(user_id=bob.id, present=False)],
        now=now,
    )
    await record_attendance(
        db,
        occurrence_id,
        [
            AttendanceEntry(user_id=alice.id, present=True),
            AttendanceEntry(user_id=alice.id, present=False),
        ],
        now=now,
    )

    result = await db.execute(
        select(AttendanceRecord).where(AttendanceRecord.occurrence_id == occurrence_id)
    )
    records = {r.user_id: r.present for r in result.scalars().all()}
    assert records == {alice.id: False, bob.id: False}

    occurrence = (await _rows(db, meeting.id))[0]
    assert occurrence.attendance_taken is True


@pytest.mark.asyncio
async def test_attendance_requires_a_live_occurrence(db, teacher, now, students):
    meeting = await create_meeting(db, _payload(teacher), now=now)
    rows = await _rows(db, meeting.id)
    cancelled_id = rows[0].id
    entries = [AttendanceEntry(user_id=students[0].id, present=True)]

    await cancel_occurrence(db, cancelled_id)

    with pytest.raises(OccurrenceStateError):
        await record_attendance(db, cancelled_id, entries, now=now)
    with pytest.raises(OccurrenceNotFoundError):
        await record_attendance(db, "missing", entries, now=now)
