# classroom_scheduler/services/occurrence_generator.py
from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import structlog
from dateutil.rrule import DAILY, MO, MONTHLY, WEEKLY, YEARLY, rrule

from classroom_scheduler.core.config import get_settings
from classroom_scheduler.core.errors import WindowExhaustionError
from classroom_scheduler.schemas.meeting import DateWindow, MeetingSchedule, OccurrenceDate
from classroom_scheduler.schemas.recurrence import Frequency

logger = structlog.get_logger(__name__)

_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}


def localize(scheduled_date: date, wall_time: time, zone: ZoneInfo) -> datetime:
    """
    Attach `wall_time` on `scheduled_date` in `zone` and return the UTC instant.

    Ambiguous wall times (DST fall-back) resolve to the first instance
    (fold=0); times inside a spring-forward gap land at the equivalent
    post-transition instant.
    """
    local = datetime.combine(scheduled_date, wall_time).replace(tzinfo=zone, fold=0)
    return local.astimezone(timezone.utc)


def occurrence_bounds(
    time_zone: str,
    start_time: datetime,
    duration_minutes: int,
    scheduled_date: date,
) -> tuple[datetime, datetime]:
    """
    UTC (start, end) of the occurrence of a meeting on `scheduled_date`,
    keeping the meeting's local wall-clock start time.
    """
    zone = ZoneInfo(time_zone)
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)
    wall = start_time.astimezone(zone).time()
    start_utc = localize(scheduled_date, wall, zone)
    return start_utc, start_utc + timedelta(minutes=duration_minutes)


def build_rrule(schedule: MeetingSchedule) -> rrule:
    """
    dateutil rule for a recurring schedule, anchored at its naive local start.

    WEEKLY rules without by_day repeat on the start weekday and YEARLY rules
    stay within the start month, even when by_month_day / by_day are given.
    """
    rule = schedule.recurrence_rule
    anchor = schedule.anchor_date

    byweekday = rule.weekday_indexes or None
    if rule.frequency is Frequency.WEEKLY and byweekday is None:
        byweekday = (anchor.weekday(),)
    bymonth = anchor.month if rule.frequency is Frequency.YEARLY else None
    until = datetime.combine(rule.until, time.max) if rule.until else None

    return rrule(
        _FREQUENCIES[rule.frequency],
        dtstart=datetime.combine(anchor, schedule.wall_time),
        interval=rule.interval,
        wkst=MO,
        count=rule.count,
        until=until,
        bymonth=bymonth,
        bymonthday=rule.by_month_day,
        byweekday=byweekday,
    )


class OccurrenceGenerator:
    """
    Expands a meeting's recurrence rule into concrete occurrence dates.

    Rules
    -----
    - Iteration starts at the meeting's local start date and steps through
      periods of `frequency * interval` (weeks start on Monday):
        DAILY   -> one candidate day per period
        WEEKLY  -> the by_day weekdays of each week
                   (default: the start date's weekday)
        MONTHLY -> by_month_day days, or every by_day weekday of the month
                   (default: the start date's day of month)
        YEARLY  -> like MONTHLY, within the start date's month of each year
    - by_day / by_month_day restrict DAILY candidates and intersect with each
      other for the longer frequencies.
    - Days that do not exist in a month (Feb 30, Feb 29 off leap years) are
      skipped, never moved.
    - The series ends at the earliest of end_date, until, count, or the
      window's upper bound. count is applied over the whole series, so dates
      before the window still consume it.
    - Wall-clock time is preserved in the meeting's zone; the UTC instant
      moves across DST transitions.

    The output is a pure function of (schedule, window): re-running the same
    window yields the same dates.
    """

    def __init__(self, max_occurrences: int | None = None) -> None:
        self.max_occurrences = max_occurrences or get_settings().MAX_GENERATED_OCCURRENCES

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def iter_dates(self, schedule: MeetingSchedule, window: DateWindow) -> Iterator[date]:
        """
        Lazily yield the local calendar dates of `schedule` inside `window`,
        in ascending order.

        Raises
        ------
        WindowExhaustionError
            If more than `max_occurrences` dates would be produced, or an
            unbounded rule runs past the last representable year.
        """
        anchor = schedule.anchor_date
        upper = _earliest(window.end, schedule.end_date)

        if not schedule.recurs:
            if window.contains(anchor) and (upper is None or anchor <= upper):
                yield anchor
            return

        rule = schedule.recurrence_rule
        upper = _earliest(upper, rule.until)
        lower = max(window.start, anchor)
        if upper is not None and upper < lower:
            return

        produced = 0
        for start in build_rrule(schedule):
            current = start.date()
            if upper is not None and current > upper:
                return
            if current < lower:
                continue
            produced += 1
            if produced > self.max_occurrences:
                logger.warning(
                    "occurrence_window_exhausted",
                    meeting_id=schedule.id,
                    limit=self.max_occurrences,
                )
                raise WindowExhaustionError(self.max_occurrences, schedule.id)
            yield current

        # dateutil stops at datetime.MAXYEAR; only count or an upper bound
        # may end an expansion
        if upper is None and rule.count is None:
            logger.warning(
                "occurrence_calendar_exhausted",
                meeting_id=schedule.id,
                produced=produced,
            )
            raise WindowExhaustionError(self.max_occurrences, schedule.id)

    def iter_occurrences(
        self,
        schedule: MeetingSchedule,
        window: DateWindow,
        now: datetime | None = None,
    ) -> Iterator[OccurrenceDate]:
        """
        Lazily yield fully resolved occurrences (instants, buffers, notice flag).
        """
        zone = schedule.zone
        wall = schedule.wall_time
        duration = timedelta(minutes=schedule.duration_minutes)
        prep = timedelta(minutes=schedule.prep_buffer)
        follow_up = timedelta(minutes=schedule.follow_up_buffer)
        notice_deadline = None
        if now is not None:
            notice_deadline = now + timedelta(minutes=schedule.min_notice)

        for scheduled_date in self.iter_dates(schedule, window):
            start_utc = localize(scheduled_date, wall, zone)
            end_utc = start_utc + duration
            yield OccurrenceDate(
                scheduled_date=scheduled_date,
                local_start=start_utc.astimezone(zone),
                start_utc=start_utc,
                end_utc=end_utc,
                blocked_start_utc=start_utc - prep,
                blocked_end_utc=end_utc + follow_up,
                within_min_notice=(
                    notice_deadline is not None and start_utc < notice_deadline
                ),
            )

    def expand(
        self,
        schedule: MeetingSchedule,
        window: DateWindow,
        now: datetime | None = None,
    ) -> list[OccurrenceDate]:
        return list(self.iter_occurrences(schedule, window, now=now))

    def matching(self, schedule: MeetingSchedule, values: Iterable[date]) -> set[date]:
        """
        Subset of `values` the rule produces, found in one walk of the series.

        The walk stops at the largest value, so it is not subject to the
        safety cap.
        """
        anchor = schedule.anchor_date
        wanted = {
            v for v in values
            if v >= anchor and (schedule.end_date is None or v <= schedule.end_date)
        }
        if not wanted:
            return set()
        if not schedule.recurs:
            return wanted & {anchor}

        last = max(wanted)
        found: set[date] = set()
        for start in build_rrule(schedule):
            current = start.date()
            if current > last:
                break
            if current in wanted:
                found.add(current)
        return found

    def matches(self, schedule: MeetingSchedule, value: date) -> bool:
        """
        True if the rule produces an occurrence on `value`.
        """
        return value in self.matching(schedule, [value])


def _earliest(*values: date | None) -> date | None:
    present = [v for v in values if v is not None]
    return min(present) if present else None
