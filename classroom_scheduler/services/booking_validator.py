# classroom_scheduler/services/booking_validator.py
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.core.errors import ConflictError
from classroom_scheduler.db.types import utcnow
from classroom_scheduler.models.group import Group, GroupMember, MeetingGroup
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.models.scheduled_meeting import ScheduledMeeting
from classroom_scheduler.schemas.booking import (
    Allow,
    AudienceMatch,
    BookedSlot,
    BookingCandidate,
    Conflict,
    ConflictReason,
)
from classroom_scheduler.services.occurrence_generator import occurrence_bounds

logger = structlog.get_logger(__name__)


class BookingValidator:
    """
    Pure booking checks: minimum notice, then buffered overlap against slots
    whose audience may share people with the candidate.
    """

    @staticmethod
    def check_notice(candidate: BookingCandidate, now: datetime) -> Conflict | None:
        deadline = now + timedelta(minutes=candidate.min_notice)
        if candidate.start_time < deadline:
            return Conflict(
                reason=ConflictReason.MIN_NOTICE,
                detail=(
                    f"Start {candidate.start_time.isoformat()} is less than "
                    f"{candidate.min_notice} minutes from now"
                ),
                meeting_id=candidate.meeting_id,
                occurrence_id=candidate.occurrence_id,
            )
        return None

    @staticmethod
    def find_overlap(
        candidate: BookingCandidate,
        slots: Iterable[BookedSlot],
    ) -> Conflict | None:
        start, end = candidate.blocked_window()
        for slot in sorted(slots, key=lambda s: s.blocked_start):
            if slot.audience is AudienceMatch.DISJOINT:
                continue
            # half-open intervals: touching windows do not overlap
            if start < slot.blocked_end and slot.blocked_start < end:
                if slot.audience is AudienceMatch.AMBIGUOUS:
                    reason = ConflictReason.AMBIGUOUS_AUDIENCE
                    detail = "Overlaps an occurrence whose audience cannot be ruled out"
                else:
                    reason = ConflictReason.OVERLAP
                    detail = "Overlaps an occurrence with a shared audience"
                return Conflict(
                    reason=reason,
                    detail=(
                        f"{detail} ({slot.blocked_start.isoformat()} - "
                        f"{slot.blocked_end.isoformat()})"
                    ),
                    meeting_id=slot.meeting_id,
                    occurrence_id=slot.occurrence_id,
                    window_start=slot.blocked_start,
                    window_end=slot.blocked_end,
                )
        return None

    @classmethod
    def evaluate(
        cls,
        candidate: BookingCandidate,
        slots: Iterable[BookedSlot],
        now: datetime,
        *,
        check_notice: bool = True,
    ) -> Allow | Conflict:
        if check_notice:
            conflict = cls.check_notice(candidate, now)
            if conflict is not None:
                return conflict
        conflict = cls.find_overlap(candidate, slots)
        if conflict is not None:
            return conflict
        return Allow()


# ---------------------------------------------------------------------------
# Loading the comparison set
# ---------------------------------------------------------------------------
async def _live_meeting_groups(
    db: AsyncSession,
    meeting_ids: set[str],
) -> dict[str, set[str]]:
    if not meeting_ids:
        return {}
    stmt = (
        select(MeetingGroup.meeting_id, MeetingGroup.group_id)
        .join(Group, Group.id == MeetingGroup.group_id)
        .where(
            MeetingGroup.meeting_id.in_(meeting_ids),
            Group.deleted_at.is_(None),
        )
    )
    result = await db.execute(stmt)
    groups: dict[str, set[str]] = defaultdict(set)
    for meeting_id, group_id in result.all():
        groups[meeting_id].add(group_id)
    return groups


async def _members_by_group(db: AsyncSession, group_ids: set[str]) -> dict[str, set[str]]:
    if not group_ids:
        return {}
    stmt = select(GroupMember.group_id, GroupMember.user_id).where(
        GroupMember.group_id.in_(group_ids)
    )
    result = await db.execute(stmt)
    members: dict[str, set[str]] = defaultdict(set)
    for group_id, user_id in result.all():
        members[group_id].add(user_id)
    return members


async def _live_groups(db: AsyncSession, group_ids: set[str]) -> set[str]:
    if not group_ids:
        return set()
    stmt = select(Group.id).where(Group.id.in_(group_ids), Group.deleted_at.is_(None))
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def load_booked_slots(
    db: AsyncSession,
    *,
    group_ids: Iterable[str],
    date_from: date,
    date_to: date,
    exclude_meeting_id: str | None = None,
    exclude_occurrence_id: str | None = None,
) -> list[BookedSlot]:
    """
    Live, non-cancelled occurrences of live meetings scheduled between
    `date_from` and `date_to`, each tagged with its audience relation to
    `group_ids`.
    """
    stmt = (
        select(MeetingOccurrence, ScheduledMeeting)
        .join(ScheduledMeeting, ScheduledMeeting.id == MeetingOccurrence.meeting_id)
        .where(
            MeetingOccurrence.scheduled_date >= date_from,
            MeetingOccurrence.scheduled_date <= date_to,
            MeetingOccurrence.deleted_at.is_(None),
            MeetingOccurrence.is_cancelled.is_(False),
            ScheduledMeeting.deleted_at.is_(None),
        )
        .order_by(MeetingOccurrence.scheduled_date)
    )
    if exclude_meeting_id is not None:
        stmt = stmt.where(MeetingOccurrence.meeting_id != exclude_meeting_id)
    if exclude_occurrence_id is not None:
        stmt = stmt.where(MeetingOccurrence.id != exclude_occurrence_id)

    result = await db.execute(stmt)
    rows: list[tuple[MeetingOccurrence, ScheduledMeeting]] = list(result.all())
    if not rows:
        return []

    requested = set(group_ids)
    candidate_groups = await _live_groups(db, requested)
    candidate_ambiguous = not requested or candidate_groups != requested

    other_groups = await _live_meeting_groups(db, {meeting.id for _, meeting in rows})
    all_groups = set(candidate_groups)
    for groups in other_groups.values():
        all_groups |= groups
    members = await _members_by_group(db, all_groups)

    candidate_members: set[str] = set()
    for group_id in candidate_groups:
        candidate_members |= members.get(group_id, set())

    def audience_for(meeting_id: str) -> AudienceMatch:
        groups = other_groups.get(meeting_id, set())
        if candidate_ambiguous or not groups:
            return AudienceMatch.AMBIGUOUS
        if groups & candidate_groups:
            return AudienceMatch.SHARED
        for group_id in groups:
            if members.get(group_id, set()) & candidate_members:
                return AudienceMatch.SHARED
        return AudienceMatch.DISJOINT

    slots: list[BookedSlot] = []
    for occurrence, meeting in rows:
        duration = timedelta(minutes=meeting.duration_minutes)
        if occurrence.actual_start_time is not None:
            start_utc = occurrence.actual_start_time
            end_utc = start_utc + duration
        else:
            start_utc, end_utc = occurrence_bounds(
                meeting.time_zone,
                meeting.start_time,
                meeting.duration_minutes,
                occurrence.scheduled_date,
            )
        slots.append(
            BookedSlot(
                occurrence_id=occurrence.id,
                meeting_id=meeting.id,
                scheduled_date=occurrence.scheduled_date,
                start_utc=start_utc,
                end_utc=end_utc,
                blocked_start=start_utc - timedelta(minutes=meeting.prep_buffer),
                blocked_end=end_utc + timedelta(minutes=meeting.follow_up_buffer),
                audience=audience_for(meeting.id),
            )
        )
    return slots


async def validate_booking(
    db: AsyncSession,
    candidate: BookingCandidate,
    now: datetime | None = None,
    *,
    check_notice: bool = True,
) -> Allow | Conflict:
    """
    Decide whether `candidate` can be booked.

    Behavior
    --------
    - MIN_NOTICE if the start is closer to `now` than the candidate's
      minimum notice.
    - OVERLAP if its buffered window intersects the buffered window of an
      occurrence whose audience shares a group or a member.
    - AMBIGUOUS_AUDIENCE if it intersects an occurrence and the audiences
      cannot be told apart (missing or deleted groups on either side).
    - Allow otherwise.

    Conflicts are returned, never raised; see `ensure_bookable`.
    """
    now = now or utcnow()
    margin = timedelta(days=get_settings().BOOKING_SCAN_MARGIN_DAYS)
    blocked_start, blocked_end = candidate.blocked_window()

    slots = await load_booked_slots(
        db,
        group_ids=candidate.group_ids,
        date_from=(blocked_start - margin).date(),
        date_to=(blocked_end + margin).date(),
        exclude_meeting_id=candidate.meeting_id,
        exclude_occurrence_id=candidate.occurrence_id,
    )
    decision = BookingValidator.evaluate(candidate, slots, now, check_notice=check_notice)
    if isinstance(decision, Conflict):
        logger.info(
            "booking_conflict",
            reason=decision.reason.value,
            meeting_id=candidate.meeting_id,
            conflicting_meeting_id=decision.meeting_id,
            conflicting_occurrence_id=decision.occurrence_id,
            start_time=candidate.start_time.isoformat(),
        )
    return decision


async def ensure_bookable(
    db: AsyncSession,
    candidate: BookingCandidate,
    now: datetime | None = None,
    *,
    check_notice: bool = True,
) -> None:
    """
    Like `validate_booking`, but raise ConflictError instead of returning it.
    """
    decision = await validate_booking(db, candidate, now, check_notice=check_notice)
    if isinstance(decision, Conflict):
        raise ConflictError(decision)
