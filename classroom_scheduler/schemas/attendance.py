# classroom_scheduler/schemas/attendance.py
from datetime import date

from pydantic import BaseModel, Field


class AttendanceEntry(BaseModel):
    """
    One attendee's presence for an occurrence, as submitted by a teacher.
    """

    user_id: str = Field(..., min_length=1, examples=["3f9a0c2e5b7d4e1f8a6b9c0d1e2f3a4b"])
    present: bool = Field(..., examples=[True])


class OccurrenceAttendance(BaseModel):
    """
    Attendance counts of a single held occurrence.
    """

    occurrence_id: str = Field(..., description="Identifier of the occurrence.")
    scheduled_date: date = Field(..., examples=["2024-01-08"])
    is_cancelled: bool = Field(False)
    attendance_taken: bool = Field(False)
    present_count: int = Field(0, ge=0, examples=[18])
    absent_count: int = Field(0, ge=0, examples=[2])


class MeetingAttendanceSummary(BaseModel):
    """
    Attendance over a date range for one meeting.
    """

    meeting_id: str = Field(..., description="Identifier of the meeting.")
    title: str = Field(..., examples=["Algebra I - Group A"])

    start_date: date = Field(
        ...,
        description="Start date (inclusive) of the reporting window.",
        examples=["2024-01-01"],
    )
    end_date: date = Field(
        ...,
        description="End date (inclusive) of the reporting window.",
        examples=["2024-01-31"],
    )

    total_occurrences: int = Field(
        ...,
        description="Live occurrences in the range, cancelled ones included.",
        examples=[5],
    )
    held_count: int = Field(
        ...,
        description="Occurrences that were not cancelled.",
        examples=[4],
    )
    cancelled_count: int = Field(..., examples=[1])
    attendance_taken_count: int = Field(..., examples=[4])

    present_count: int = Field(..., description="Present marks across all occurrences.")
    absent_count: int = Field(..., description="Absent marks across all occurrences.")

    attendance_pct: float = Field(
        ...,
        description=(
            "present / (present + absent) * 100 over occurrences with attendance "
            "taken, rounded to two decimals. 0.0 when nothing was recorded."
        ),
        examples=[90.0],
    )

    occurrences: list[OccurrenceAttendance] = Field(default_factory=list)
