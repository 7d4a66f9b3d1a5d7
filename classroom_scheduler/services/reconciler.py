# classroom_scheduler/services/reconciler.py
from __future__ import annotations

from collections.abc import Iterable
from datetime import date

from classroom_scheduler.schemas.reconciliation import OccurrenceState, ReconciliationPlan


class OccurrenceReconciler:
    """
    Pure diff between the dates a rule generates and the rows already stored.

    Rules (keyed on scheduled_date, one row per meeting and date)
    -------------------------------------------------------------
    - Generated date, active row       -> preserve (manual edits survive)
    - Generated date, retired row      -> restore
    - Generated date, user-deleted row -> left deleted, nothing created
    - Generated date, no row           -> create
    - Active row, date not generated:
        - date still matches the rule (outside the window) -> preserve
        - attendance already taken                         -> preserve
        - otherwise                                        -> retire
    - Inactive rows outside the generated set are untouched.
    """

    @staticmethod
    def plan(
        generated: Iterable[date],
        existing: Iterable[OccurrenceState],
        rule_dates: Iterable[date] = (),
    ) -> ReconciliationPlan:
        generated_dates = sorted(set(generated))
        matching = set(rule_dates) | set(generated_dates)
        by_date = {row.scheduled_date: row for row in existing}

        to_create: list[date] = []
        to_preserve: list[OccurrenceState] = []
        to_restore: list[OccurrenceState] = []
        to_retire: list[OccurrenceState] = []

        for current in generated_dates:
            row = by_date.get(current)
            if row is None:
                to_create.append(current)
            elif row.is_active:
                to_preserve.append(row)
            elif row.is_retired:
                to_restore.append(row)

        generated_set = set(generated_dates)
        for current in sorted(by_date):
            if current in generated_set:
                continue
            row = by_date[current]
            if not row.is_active:
                continue
            if current in matching or row.attendance_taken:
                to_preserve.append(row)
            else:
                to_retire.append(row)

        to_preserve.sort(key=lambda r: r.scheduled_date)
        return ReconciliationPlan(
            to_create=to_create,
            to_preserve=to_preserve,
            to_restore=to_restore,
            to_retire=to_retire,
        )
