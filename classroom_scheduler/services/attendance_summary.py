# classroom_scheduler/services/attendance_summary.py
from __future__ import annotations

from collections import defaultdict
from datetime import date as date_type
from typing import Dict, List

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_scheduler.models.attendance_record import AttendanceRecord
from classroom_scheduler.models.meeting_occurrence import MeetingOccurrence
from classroom_scheduler.schemas.attendance import MeetingAttendanceSummary, OccurrenceAttendance
from classroom_scheduler.services.occurrence_service import load_meeting


async def compute_attendance_summary(
    db: AsyncSession,
    meeting_id: str,
    start_date: date_type,
    end_date: date_type,
) -> MeetingAttendanceSummary:
    """
    Summarize attendance of one meeting over [start_date, end_date].

    Steps
    -----
    1) Fetch the meeting's live (not soft-deleted) occurrences in range.
    2) Fetch their attendance records.
    3) For each occurrence, count present / absent marks.
    4) Compute:
        - held_count = occurrences not cancelled
        - attendance_pct = present / (present + absent) * 100
          (0 if nothing was recorded)

    Raises
    ------
    ValueError
        If end_date is before start_date.
    MeetingNotFoundError
        If the meeting does not exist or is soft-deleted.
    """
    if end_date < start_date:
        raise ValueError("end_date must be greater than or equal to start_date")

    meeting = await load_meeting(db, meeting_id)

    occ_stmt = (
        select(MeetingOccurrence)
        .where(
            and_(
                MeetingOccurrence.meeting_id == meeting_id,
                MeetingOccurrence.scheduled_date >= start_date,
                MeetingOccurrence.scheduled_date <= end_date,
                MeetingOccurrence.deleted_at.is_(None),
            )
        )
        .order_by(MeetingOccurrence.scheduled_date)
    )
    occ_result = await db.execute(occ_stmt)
    occurrences: List[MeetingOccurrence] = list(occ_result.scalars().all())

    # Group attendance marks by occurrence
    marks: Dict[str, Dict[bool, int]] = defaultdict(lambda: {True: 0, False: 0})
    if occurrences:
        rec_stmt = select(AttendanceRecord).where(
            AttendanceRecord.occurrence_id.in_([o.id for o in occurrences])
        )
        rec_result = await db.execute(rec_stmt)
        for record in rec_result.scalars().all():
            marks[record.occurrence_id][bool(record.present)] += 1

    per_occurrence: list[OccurrenceAttendance] = []
    for occurrence in occurrences:
        counts = marks[occurrence.id]
        per_occurrence.append(
            OccurrenceAttendance(
                occurrence_id=occurrence.id,
                scheduled_date=occurrence.scheduled_date,
                is_cancelled=occurrence.is_cancelled,
                attendance_taken=occurrence.attendance_taken,
                present_count=counts[True],
                absent_count=counts[False],
            )
        )

    cancelled = sum(1 for o in per_occurrence if o.is_cancelled)
    present = sum(o.present_count for o in per_occurrence)
    absent = sum(o.absent_count for o in per_occurrence)

    if present + absent > 0:
        attendance_pct = (present / float(present + absent)) * 100.0
    else:
        attendance_pct = 0.0

    return MeetingAttendanceSummary(
        meeting_id=meeting.id,
        title=meeting.title,
        start_date=start_date,
        end_date=end_date,
        total_occurrences=len(per_occurrence),
        held_count=len(per_occurrence) - cancelled,
        cancelled_count=cancelled,
        attendance_taken_count=sum(1 for o in per_occurrence if o.attendance_taken),
        present_count=present,
        absent_count=absent,
        attendance_pct=round(attendance_pct, 2),
        occurrences=per_occurrence,
    )
