# tests/test_validate_booking_service.py
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select

from classroom_scheduler.core.errors import ConflictError
from classroom_scheduler.models.group import Group
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.schemas.booking import (
    Allow,
    BookingCandidate,
    Conflict,
    ConflictReason,
)
from classroom_scheduler.schemas.meeting import MeetingCreate
from classroom_scheduler.services.booking_validator import ensure_bookable, validate_booking
from classroom_scheduler.services.meeting_service import (
    cancel_occurrence,
    create_meeting,
    delay_occurrence,
    soft_delete_meeting,
)

UTC = timezone.utc
EXISTING_START = datetime(2024, 1, 10, 10, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def groups(make_user, make_group):
    alice = await make_user("Alice")
    bob = await make_user("Bob")
    return {
        "a": await make_group("Group A", members=[alice]),
        "b": await make_group("Group B", members=[bob]),
        "c": await make_group("Group C", members=[alice]),
    }


async def _existing_meeting(db, teacher, now, group_ids):
    """10:00-11:00 UTC on 2024-01-10 with a 10 minute prep buffer."""
    payload = MeetingCreate(
        title="Existing lesson",
        start_time=EXISTING_START,
        duration_minutes=60,
        prep_buffer=10,
        created_by=teacher.id,
        group_ids=group_ids,
    )
    return await create_meeting(db, payload, now=now)


async def _occurrence_id(db, meeting_id: str) -> str:
    result = await db.execute(
        select(MeetingOccurrence.id).where(MeetingOccurrence.meeting_id == meeting_id)
    )
    return result.scalar_one()


def _candidate(group_ids, hour=10, minute=45, **kwargs) -> BookingCandidate:
    return BookingCandidate(
        group_ids=group_ids,
        start_time=datetime(2024, 1, 10, hour, minute, tzinfo=UTC),
        duration_minutes=45,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_same_group_overlap_is_a_conflict(db, teacher, now, groups):
    existing = await _existing_meeting(db, teacher, now, [groups["a"].id])

    decision = await validate_booking(db, _candidate([groups["a"].id]), now)

    assert isinstance(decision, Conflict)
    assert decision.reason == ConflictReason.OVERLAP
    assert decision.meeting_id == existing.id


@pytest.mark.asyncio
async def test_shared_member_across_groups_is_a_conflict(db, teacher, now, groups):
    await _existing_meeting(db, teacher, now, [groups["a"].id])

    decision = await validate_booking(db, _candidate([groups["c"].id]), now)

    assert isinstance(decision, Conflict)
    assert decision.reason == ConflictReason.OVERLAP


@pytest.mark.asyncio
async def test_disjoint_groups_are_allowed(db, teacher, now, groups):
    await _existing_meeting(db, teacher, now, [groups["a"].id])

    decision = await validate_booking(db, _candidate([groups["b"].id]), now)

    assert isinstance(decision, Allow)


@pytest.mark.asyncio
async def test_candidate_without_groups_is_ambiguous(db, teacher, now, groups):
    await _existing_meeting(db, teacher, now, [groups["a"].id])

    decision = await validate_booking(db, _candidate([]), now)

    assert isinstance(decision, Conflict)
    assert decision.reason == ConflictReason.AMBIGUOUS_AUDIENCE


@pytest.mark.asyncio
async def test_unknown_or_deleted_candidate_group_is_ambiguous(db, teacher, now, groups):
    await _existing_meeting(db, teacher, now, [groups["a"].id])

    unknown = await validate_booking(db, _candidate([groups["b"].id, "no-such-group"]), now)

    group_b = await db.get(Group, groups["b"].id)
    group_b.deleted_at = now
    await db.commit()
    deleted = await validate_booking(db, _candidate([groups["b"].id]), now)

    assert unknown.reason == ConflictReason.AMBIGUOUS_AUDIENCE
    assert deleted.reason == ConflictReason.AMBIGUOUS_AUDIENCE


@pytest.mark.asyncio
async def test_existing_meeting_without_groups_is_ambiguous(db, teacher, now, groups):
    await _existing_meeting(db, teacher, now, [])

    decision = await validate_booking(db, _candidate([groups["b"].id]), now)

    assert isinstance(decision, Conflict)
    assert decision.reason == ConflictReason.AMBIGUOUS_AUDIENCE


@pytest.mark.asyncio
async def test_cancelled_occurrences_and_deleted_meetings_do_not_block(db, teacher, now, groups):
    cancelled = await _existing_meeting(db, teacher, now, [groups["a"].id])
    await cancel_occurrence(db, await _occurrence_id(db, cancelled.id))

    deleted = await _existing_meeting(db, teacher, now, [groups["c"].id])
    await soft_delete_meeting(db, deleted.id, now=now)

    decision = await validate_booking(db, _candidate([groups["a"].id]), now)

    assert isinstance(decision, Allow)


@pytest.mark.asyncio
async def test_delayed_occurrence_is_checked_at_its_actual_start(db, teacher, now, groups):
    existing = await _existing_meeting(db, teacher, now, [groups["a"].id])
    await delay_occurrence(
        db,
        await _occurrence_id(db, existing.id),
        datetime(2024, 1, 10, 12, 0, tzinfo=UTC),
        now=now,
    )

    early = await validate_booking(db, _candidate([groups["a"].id], hour=10, minute=45), now)
    late = await validate_booking(db, _candidate([groups["a"].id], hour=12, minute=30), now)

    assert isinstance(early, Allow)
    assert isinstance(late, Conflict)
    assert late.reason == ConflictReason.OVERLAP


@pytest.mark.asyncio
async def test_ensure_bookable_raises_conflict_error(db, teacher, now, groups):
    await _existing_meeting(db, teacher, now, [groups["a"].id])

    with pytest.raises(ConflictError) as exc_info:
        await ensure_bookable(db, _candidate([groups["a"].id]), now)

    assert exc_info.value.conflict.reason == ConflictReason.OVERLAP
    await ensure_bookable(db, _candidate([groups["b"].id]), now)


@pytest.mark.asyncio
async def test_min_notice_is_checked_against_now(db, groups):
    now = datetime(2024, 1, 10, 10, 30, tzinfo=UTC)

    decision = await validate_booking(db, _candidate([groups["a"].id], min_notice=30), now)

    assert isinstance(decision, Conflict)
    assert decision.reason == ConflictReason.MIN_NOTICE
