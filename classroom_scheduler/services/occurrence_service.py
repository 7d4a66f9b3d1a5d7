# classroom_scheduler/services/occurrence_service.py
from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.core.errors import MeetingNotFoundError
from classroom_scheduler.db.types import utcnow
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.models.scheduled_meeting import ScheduledMeeting
from classroom_scheduler.schemas.meeting import DateWindow, MeetingSchedule, OccurrenceDate
from classroom_scheduler.schemas.reconciliation import (
    OccurrenceState,
    ReconciliationPlan,
    ReconciliationResult,
)
from classroom_scheduler.services.locks import meeting_lock
from classroom_scheduler.services.occurrence_generator import OccurrenceGenerator
from classroom_scheduler.services.reconciler import OccurrenceReconciler

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
async def load_meeting(
    db: AsyncSession,
    meeting_id: str,
    *,
    for_update: bool = False,
) -> ScheduledMeeting:
    """
    Fetch a live (not soft-deleted) meeting or raise MeetingNotFoundError.
    """
    stmt = select(ScheduledMeeting).where(
        ScheduledMeeting.id == meeting_id,
        ScheduledMeeting.deleted_at.is_(None),
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    meeting = result.scalar_one_or_none()
    if meeting is None:
        raise MeetingNotFoundError(meeting_id)
    return meeting


async def load_occurrences(db: AsyncSession, meeting_id: str) -> list[MeetingOccurrence]:
    """
    All occurrence rows of a meeting, soft-deleted ones included.
    """
    stmt = (
        select(MeetingOccurrence)
        .where(MeetingOccurrence.meeting_id == meeting_id)
        .order_by(MeetingOccurrence.scheduled_date)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


def default_window(
    schedule: MeetingSchedule,
    now: datetime,
    horizon_days: int | None = None,
) -> DateWindow | None:
    """
    Window materialized when none is given: from today's local date (or the
    first occurrence, if that is later) up to `horizon_days` past it, capped
    by the meeting's end_date. None if the end_date falls before the start.

    Past dates are not materialized; stored rows before the window are
    checked against the rule individually by `plan_reconciliation`.
    """
    if horizon_days is None:
        horizon_days = get_settings().EXPANSION_HORIZON_DAYS
    today = now.astimezone(schedule.zone).date()
    start = max(today, schedule.anchor_date)
    end = start + timedelta(days=horizon_days)
    if schedule.end_date is not None:
        end = min(end, schedule.end_date)
    if end < start:
        return None
    return DateWindow(start=start, end=end)


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------
async def expand_occurrences(
    db: AsyncSession,
    meeting_id: str,
    window: DateWindow,
    now: datetime | None = None,
) -> list[OccurrenceDate]:
    """
    Generate (without persisting) the occurrences of a meeting inside `window`.
    """
    meeting = await load_meeting(db, meeting_id)
    schedule = MeetingSchedule.model_validate(meeting)
    return OccurrenceGenerator().expand(schedule, window, now=now)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
def plan_reconciliation(
    schedule: MeetingSchedule,
    window: DateWindow | None,
    rows: list[MeetingOccurrence],
    generator: OccurrenceGenerator | None = None,
) -> ReconciliationPlan:
    """
    Diff the dates generated for `window` against `rows`.

    Active rows outside the generated set are checked against the rule in
    one walk of the series, so a row outside the window that still matches
    is preserved.
    """
    generator = generator or OccurrenceGenerator()
    generated = list(generator.iter_dates(schedule, window)) if window else []
    generated_set = set(generated)

    states = [OccurrenceState.model_validate(row) for row in rows]
    stale = [
        state.scheduled_date
        for state in states
        if state.is_active and state.scheduled_date not in generated_set
    ]
    rule_dates = generator.matching(schedule, stale)
    return OccurrenceReconciler.plan(generated, states, rule_dates)


def _retire_occurrence(row: MeetingOccurrence, now: datetime) -> None:
    row.deleted_at = now
    row.is_retired = True


def _restore_occurrence(row: MeetingOccurrence) -> None:
    row.deleted_at = None
    row.is_retired = False


async def apply_plan(
    db: AsyncSession,
    meeting_id: str,
    plan: ReconciliationPlan,
    rows: list[MeetingOccurrence],
    now: datetime,
) -> list[MeetingOccurrence]:
    """
    Stage the plan's writes on `db` and flush. Does not commit.

    Returns the newly created rows.
    """
    rows_by_id = {row.id: row for row in rows}

    created: list[MeetingOccurrence] = []
    for scheduled_date in plan.to_create:
        row = MeetingOccurrence(meeting_id=meeting_id, scheduled_date=scheduled_date)
        db.add(row)
        created.append(row)

    for state in plan.to_restore:
        _restore_occurrence(rows_by_id[state.id])

    for state in plan.to_retire:
        _retire_occurrence(rows_by_id[state.id], now)

    if plan.has_writes:
        await db.flush()
    return created


async def reconcile_meeting(
    db: AsyncSession,
    meeting: ScheduledMeeting,
    window: DateWindow | None = None,
    *,
    now: datetime,
) -> tuple[ReconciliationResult, ReconciliationPlan]:
    """
    Plan and stage reconciliation for an already-loaded (and locked) meeting.

    Caller owns the transaction: nothing is committed here.
    """
    schedule = MeetingSchedule.model_validate(meeting)
    if window is None:
        window = default_window(schedule, now)

    rows = await load_occurrences(db, meeting.id)
    plan = plan_reconciliation(schedule, window, rows)
    await apply_plan(db, meeting.id, plan, rows, now)

    result = ReconciliationResult(
        meeting_id=meeting.id,
        window=window,
        created=list(plan.to_create),
        preserved=[s.scheduled_date for s in plan.to_preserve],
        restored=[s.scheduled_date for s in plan.to_restore],
        retired=[s.scheduled_date for s in plan.to_retire],
    )
    return result, plan


async def reconcile(
    db: AsyncSession,
    meeting_id: str,
    window: DateWindow | None = None,
    *,
    now: datetime | None = None,
) -> ReconciliationResult:
    """
    Bring a meeting's occurrence rows in line with its current rule.

    Behavior
    --------
    - Runs under the meeting's in-process lock and a row lock on the meeting.
    - Creates rows for newly generated dates, restores rows retired by an
      earlier pass, retires rows that no longer match the rule, and leaves
      everything else alone (see OccurrenceReconciler).
    - All writes are committed together; on any error the session is rolled
      back and the error re-raised, leaving no partial writes.
      The rollback expires every ORM object held by the session, so callers
      must re-read (or `await db.refresh(...)`) objects they keep using.
    - Idempotent: a second pass with an unchanged rule writes nothing.

    Raises
    ------
    MeetingNotFoundError
        If the meeting does not exist or is soft-deleted.
    WindowExhaustionError
        If the window would generate more dates than the safety cap.
    """
    now = now or utcnow()

    async with meeting_lock(meeting_id):
        try:
            meeting = await load_meeting(db, meeting_id, for_update=True)
            result, plan = await reconcile_meeting(db, meeting, window, now=now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "occurrences_reconciled",
        meeting_id=meeting_id,
        created=len(result.created),
        preserved=len(result.preserved),
        restored=len(result.restored),
        retired=len(result.retired),
    )
    return result
