# classroom_scheduler/schemas/recurrence.py
from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Frequency(str, Enum):
    """
    Base period a recurrence rule steps through.
    """

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(str, Enum):
    """
    Weekday codes as used in RRULE `BYDAY` (Monday first).
    """

    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def index(self) -> int:
        """Python weekday number (Monday=0 ... Sunday=6)."""
        return _WEEKDAY_ORDER.index(self)


_WEEKDAY_ORDER = list(Weekday)


class RecurrenceRule(BaseModel):
    """
    Normalized, immutable recurrence rule.

    Instances are produced by `parse_recurrence_rule`, which enforces the
    invariants; construct them directly only from already-validated data.
    `by_day` and `by_month_day` are sorted and de-duplicated.
    """

    model_config = ConfigDict(frozen=True)

    frequency: Frequency = Field(
        ...,
        description="Base period of the rule.",
        examples=["weekly"],
    )
    interval: int = Field(
        1,
        ge=1,
        description="Number of base periods between repetitions (2 = every other).",
        examples=[1],
    )
    by_day: tuple[Weekday, ...] | None = Field(
        None,
        description="Weekdays the rule is restricted to (or expanded to, for weekly+).",
        examples=[["MO", "WE"]],
    )
    by_month_day: tuple[int, ...] | None = Field(
        None,
        description="Days of the month (1-31) the rule is restricted to.",
        examples=[[1, 15]],
    )
    count: int | None = Field(
        None,
        ge=1,
        description="Total number of occurrences in the series.",
    )
    until: date | None = Field(
        None,
        description="Last date (inclusive) an occurrence may fall on.",
    )

    @property
    def weekday_indexes(self) -> tuple[int, ...]:
        if not self.by_day:
            return ()
        return tuple(day.index for day in self.by_day)

    def to_document(self) -> dict[str, Any]:
        """
        JSON-safe document stored in `scheduled_meeting.recurrence_rule`.
        """
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "by_day": [day.value for day in self.by_day] if self.by_day else None,
            "by_month_day": list(self.by_month_day) if self.by_month_day else None,
            "count": self.count,
            "until": self.until.isoformat() if self.until else None,
        }

    def to_rrule(self) -> str:
        """
        Render the rule as an RFC 5545 RRULE value (without the `RRULE:` prefix).
        """
        parts = [f"FREQ={self.frequency.value.upper()}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            parts.append("BYDAY=" + ",".join(day.value for day in self.by_day))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until.strftime('%Y%m%d')}")
        return ";".join(parts)
