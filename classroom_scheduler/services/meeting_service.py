# classroom_scheduler/services/meeting_service.py
from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.core.errors import (
    ConflictError,
    InvalidRuleError,
    OccurrenceNotFoundError,
    OccurrenceStateError,
)
from classroom_scheduler.db.types import new_id, utcnow
from classroom_scheduler.models.attendance_record import AttendanceRecord
from classroom_scheduler.models.group import MeetingGroup
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.models.scheduled_meeting import ScheduledMeeting
from classroom_scheduler.schemas.attendance import AttendanceEntry
from classroom_scheduler.schemas.booking import BookingCandidate, Conflict
from classroom_scheduler.schemas.meeting import (
    DateWindow,
    MeetingCreate,
    MeetingSchedule,
    OccurrenceDate,
    RecurrenceUpdate,
)
from classroom_scheduler.schemas.recurrence import RecurrenceRule
from classroom_scheduler.schemas.reconciliation import ReconciliationResult
from classroom_scheduler.services.booking_validator import (
    BookingValidator,
    load_booked_slots,
    validate_booking,
)
from classroom_scheduler.services.locks import meeting_lock
from classroom_scheduler.services.occurrence_generator import (
    OccurrenceGenerator,
    occurrence_bounds,
)
from classroom_scheduler.services.occurrence_service import (
    apply_plan,
    default_window,
    load_meeting,
    load_occurrences,
    plan_reconciliation,
)
from classroom_scheduler.services.rule_parser import parse_recurrence_rule

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _resolve_recurrence(
    is_recurring: bool,
    raw_rule: dict | str | RecurrenceRule | None,
    end_date: date | None,
    start_time: datetime,
    time_zone: str,
) -> RecurrenceRule | None:
    rule = parse_recurrence_rule(raw_rule) if raw_rule is not None else None
    if is_recurring and rule is None:
        raise InvalidRuleError("recurrence_rule", "required when is_recurring is set")
    if not is_recurring and rule is not None:
        raise InvalidRuleError("is_recurring", "recurrence_rule given for a non-recurring meeting")
    first_date = start_time.astimezone(ZoneInfo(time_zone)).date()
    if end_date is not None and end_date < first_date:
        raise InvalidRuleError("end_date", "end_date is before the first occurrence")
    return rule


async def meeting_group_ids(db: AsyncSession, meeting_id: str) -> list[str]:
    stmt = select(MeetingGroup.group_id).where(MeetingGroup.meeting_id == meeting_id)
    result = await db.execute(stmt)
    return sorted(result.scalars().all())


async def _load_occurrence(db: AsyncSession, occurrence_id: str) -> MeetingOccurrence:
    stmt = select(MeetingOccurrence).where(MeetingOccurrence.id == occurrence_id)
    result = await db.execute(stmt)
    occurrence = result.scalar_one_or_none()
    if occurrence is None:
        raise OccurrenceNotFoundError(occurrence_id)
    return occurrence


def _candidate_for(
    schedule: MeetingSchedule,
    occurrence: OccurrenceDate,
    group_ids: list[str],
) -> BookingCandidate:
    return BookingCandidate(
        meeting_id=schedule.id,
        group_ids=group_ids,
        start_time=occurrence.start_utc,
        duration_minutes=schedule.duration_minutes,
        prep_buffer=schedule.prep_buffer,
        follow_up_buffer=schedule.follow_up_buffer,
        min_notice=schedule.min_notice,
    )


async def _check_occurrences(
    db: AsyncSession,
    schedule: MeetingSchedule,
    occurrences: Iterable[OccurrenceDate],
    group_ids: list[str],
    now: datetime,
    *,
    check_notice: bool,
) -> None:
    """
    Validate every occurrence against one comparison set loaded for their
    whole date span. Raises ConflictError on the first refusal.
    """
    occurrences = list(occurrences)
    if not occurrences:
        return

    margin = timedelta(days=get_settings().BOOKING_SCAN_MARGIN_DAYS)
    slots = await load_booked_slots(
        db,
        group_ids=group_ids,
        date_from=(occurrences[0].blocked_start_utc - margin).date(),
        date_to=(occurrences[-1].blocked_end_utc + margin).date(),
        exclude_meeting_id=schedule.id,
    )
    for occurrence in occurrences:
        candidate = _candidate_for(schedule, occurrence, group_ids)
        decision = BookingValidator.evaluate(candidate, slots, now, check_notice=check_notice)
        if isinstance(decision, Conflict):
            logger.info(
                "booking_conflict",
                reason=decision.reason.value,
                meeting_id=schedule.id,
                scheduled_date=occurrence.scheduled_date.isoformat(),
                conflicting_meeting_id=decision.meeting_id,
                conflicting_occurrence_id=decision.occurrence_id,
            )
            raise ConflictError(decision)


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------
async def create_meeting(
    db: AsyncSession,
    payload: MeetingCreate,
    *,
    now: datetime | None = None,
    validate: bool = True,
) -> ScheduledMeeting:
    """
    Create a meeting, attach its groups and materialize its occurrences.

    Behavior
    --------
    - The recurrence rule is parsed and checked before anything is written.
    - With `validate=True`, every occurrence in the default window is
      checked for minimum notice and audience overlap; the first conflict
      aborts the whole creation with ConflictError.
    - Meeting, groups and occurrences are committed in one transaction.
      A failure rolls the session back, expiring every object it holds.

    Raises
    ------
    InvalidRuleError, ConflictError, WindowExhaustionError
    """
    now = now or utcnow()
    rule = _resolve_recurrence(
        payload.is_recurring,
        payload.recurrence_rule,
        payload.end_date,
        payload.start_time,
        payload.time_zone,
    )

    meeting = ScheduledMeeting(
        id=new_id(),
        title=payload.title,
        location=payload.location,
        time_zone=payload.time_zone,
        start_time=payload.start_time,
        duration_minutes=payload.duration_minutes,
        is_recurring=payload.is_recurring,
        recurrence_rule=rule.to_document() if rule else None,
        end_date=payload.end_date,
        prep_buffer=payload.prep_buffer,
        follow_up_buffer=payload.follow_up_buffer,
        min_notice=payload.min_notice,
        meeting_metadata=payload.metadata.model_dump() if payload.metadata else None,
        created_by=payload.created_by,
    )
    schedule = MeetingSchedule.model_validate(meeting)
    window = default_window(schedule, now)
    group_ids = sorted(set(payload.group_ids))

    try:
        if validate and window is not None:
            occurrences = OccurrenceGenerator().iter_occurrences(schedule, window, now=now)
            await _check_occurrences(
                db, schedule, occurrences, group_ids, now, check_notice=True
            )

        db.add(meeting)
        for group_id in group_ids:
            db.add(MeetingGroup(meeting_id=meeting.id, group_id=group_id))
        await db.flush()

        plan = plan_reconciliation(schedule, window, [])
        await apply_plan(db, meeting.id, plan, [], now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "meeting_created",
        meeting_id=meeting.id,
        is_recurring=meeting.is_recurring,
        occurrences=len(plan.to_create),
    )
    return meeting


async def update_recurrence(
    db: AsyncSession,
    meeting_id: str,
    payload: RecurrenceUpdate,
    *,
    now: datetime | None = None,
    window: DateWindow | None = None,
    validate: bool = True,
) -> ReconciliationResult:
    """
    Change a meeting's recurrence and reconcile its occurrences in the same
    transaction.

    Only fields explicitly set on `payload` are applied. Newly created or
    restored occurrences are checked for audience overlap (not for minimum
    notice, which applies to bookings rather than series edits).
    """
    now = now or utcnow()
    fields = payload.model_fields_set

    async with meeting_lock(meeting_id):
        try:
            meeting = await load_meeting(db, meeting_id, for_update=True)

            is_recurring = meeting.is_recurring
            if "is_recurring" in fields and payload.is_recurring is not None:
                is_recurring = payload.is_recurring
            if "recurrence_rule" in fields:
                raw_rule = payload.recurrence_rule
            elif is_recurring:
                raw_rule = meeting.recurrence_rule
            else:
                raw_rule = None
            end_date = payload.end_date if "end_date" in fields else meeting.end_date

            schedule_before = MeetingSchedule.model_validate(meeting)
            rule = _resolve_recurrence(
                is_recurring,
                raw_rule,
                end_date,
                schedule_before.start_time,
                meeting.time_zone,
            )

            meeting.is_recurring = is_recurring
            meeting.recurrence_rule = rule.to_document() if rule else None
            meeting.end_date = end_date

            schedule = MeetingSchedule.model_validate(meeting)
            if window is None:
                window = default_window(schedule, now)

            rows = await load_occurrences(db, meeting.id)
            plan = plan_reconciliation(schedule, window, rows)

            if validate and window is not None:
                new_dates = set(plan.to_create) | {s.scheduled_date for s in plan.to_restore}
                occurrences = [
                    occ
                    for occ in OccurrenceGenerator().iter_occurrences(schedule, window, now=now)
                    if occ.scheduled_date in new_dates
                ]
                group_ids = await meeting_group_ids(db, meeting.id)
                await _check_occurrences(
                    db, schedule, occurrences, group_ids, now, check_notice=False
                )

            await apply_plan(db, meeting.id, plan, rows, now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    result = ReconciliationResult(
        meeting_id=meeting_id,
        window=window,
        created=list(plan.to_create),
        preserved=[s.scheduled_date for s in plan.to_preserve],
        restored=[s.scheduled_date for s in plan.to_restore],
        retired=[s.scheduled_date for s in plan.to_retire],
    )
    logger.info(
        "recurrence_updated",
        meeting_id=meeting_id,
        is_recurring=is_recurring,
        created=len(result.created),
        restored=len(result.restored),
        retired=len(result.retired),
    )
    return result


async def soft_delete_meeting(
    db: AsyncSession,
    meeting_id: str,
    *,
    now: datetime | None = None,
) -> ScheduledMeeting:
    """
    Soft-delete a meeting. Its occurrences stay in place but no longer
    block bookings, since the validator ignores deleted meetings.
    """
    now = now or utcnow()
    async with meeting_lock(meeting_id):
        try:
            meeting = await load_meeting(db, meeting_id, for_update=True)
            meeting.deleted_at = now
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("meeting_deleted", meeting_id=meeting_id)
    return meeting


# ---------------------------------------------------------------------------
# Occurrences
# ---------------------------------------------------------------------------
async def cancel_occurrence(db: AsyncSession, occurrence_id: str) -> MeetingOccurrence:
    """
    Mark an occurrence as cancelled. The row stays and keeps its date, so
    reconciliation preserves it.
    """
    try:
        occurrence = await _load_occurrence(db, occurrence_id)
        if occurrence.deleted_at is not None:
            raise OccurrenceStateError(f"Occurrence {occurrence_id} is deleted")
        occurrence.is_cancelled = True
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "occurrence_cancelled",
        occurrence_id=occurrence_id,
        meeting_id=occurrence.meeting_id,
    )
    return occurrence


async def delay_occurrence(
    db: AsyncSession,
    occurrence_id: str,
    actual_start_time: datetime,
    *,
    now: datetime | None = None,
    validate: bool = True,
) -> MeetingOccurrence:
    """
    Record that an occurrence starts late.

    `delay_minutes` is derived from the scheduled local start. With
    `validate=True` the shifted occurrence is checked for overlap (minimum
    notice does not apply to a delay).

    Raises
    ------
    ValueError
        If `actual_start_time` is naive or precedes the scheduled start.
    OccurrenceStateError
        If the occurrence is cancelled or deleted.
    ConflictError
        If the shifted occurrence overlaps another audience-sharing one.
    """
    if actual_start_time.tzinfo is None:
        raise ValueError("actual_start_time must be timezone-aware")
    now = now or utcnow()

    try:
        occurrence = await _load_occurrence(db, occurrence_id)
        if occurrence.deleted_at is not None or occurrence.is_cancelled:
            raise OccurrenceStateError(
                f"Occurrence {occurrence_id} is cancelled or deleted and cannot be delayed"
            )
        meeting = await load_meeting(db, occurrence.meeting_id)

        scheduled_start, _ = occurrence_bounds(
            meeting.time_zone,
            meeting.start_time,
            meeting.duration_minutes,
            occurrence.scheduled_date,
        )
        delay = round((actual_start_time - scheduled_start).total_seconds() / 60)
        if delay < 0:
            raise ValueError("actual_start_time precedes the scheduled start")

        if validate:
            candidate = BookingCandidate(
                meeting_id=meeting.id,
                occurrence_id=occurrence.id,
                group_ids=await meeting_group_ids(db, meeting.id),
                start_time=actual_start_time,
                duration_minutes=meeting.duration_minutes,
                prep_buffer=meeting.prep_buffer,
                follow_up_buffer=meeting.follow_up_buffer,
                min_notice=meeting.min_notice,
            )
            decision = await validate_booking(db, candidate, now, check_notice=False)
            if isinstance(decision, Conflict):
                raise ConflictError(decision)

        occurrence.actual_start_time = actual_start_time
        occurrence.delay_minutes = delay
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "occurrence_delayed",
        occurrence_id=occurrence_id,
        meeting_id=occurrence.meeting_id,
        delay_minutes=delay,
    )
    return occurrence


async def delete_occurrence(
    db: AsyncSession,
    occurrence_id: str,
    *,
    now: datetime | None = None,
) -> MeetingOccurrence:
    """
    Soft-delete a single occurrence on behalf of a user. Reconciliation
    never recreates or restores it.
    """
    now = now or utcnow()
    try:
        occurrence = await _load_occurrence(db, occurrence_id)
        if occurrence.deleted_at is not None:
            raise OccurrenceNotFoundError(occurrence_id)
        occurrence.deleted_at = now
        occurrence.is_retired = False
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "occurrence_deleted",
        occurrence_id=occurrence_id,
        meeting_id=occurrence.meeting_id,
    )
    return occurrence


async def record_attendance(
    db: AsyncSession,
    occurrence_id: str,
    entries: list[AttendanceEntry],
    *,
    now: datetime | None = None,
) -> list[AttendanceRecord]:
    """
    Upsert attendance marks for an occurrence and flag it as taken.

    Idempotent behavior: one row per (occurrence, user); recording the same
    user again overwrites the previous mark. If a user appears more than
    once in `entries`, the last entry wins.

    Raises
    ------
    OccurrenceNotFoundError
        If the occurrence does not exist.
    OccurrenceStateError
        If the occurrence is cancelled or deleted.
    """
    now = now or utcnow()
    latest = {entry.user_id: entry.present for entry in entries}

    try:
        occurrence = await _load_occurrence(db, occurrence_id)
        if occurrence.deleted_at is not None or occurrence.is_cancelled:
            raise OccurrenceStateError(
                f"Cannot record attendance for cancelled or deleted occurrence {occurrence_id}"
            )

        records: list[AttendanceRecord] = []
        for user_id, present in latest.items():
            record = await db.get(AttendanceRecord, (occurrence_id, user_id))
            if record is None:
                record = AttendanceRecord(occurrence_id=occurrence_id, user_id=user_id)
                db.add(record)
            record.present = present
            record.recorded_at = now
            records.append(record)

        occurrence.attendance_taken = True
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "attendance_recorded",
        occurrence_id=occurrence_id,
        entries=len(records),
        present=sum(1 for r in records if r.present),
    )
    return records
