# classroom_scheduler/services/rule_parser.py
from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from dateutil import parser as date_parser
from dateutil.rrule import rrulestr

from classroom_scheduler.core.errors import InvalidRuleError
from classroom_scheduler.schemas.recurrence import Frequency, RecurrenceRule, Weekday

_DOCUMENT_KEYS = {
    "frequency": "frequency",
    "freq": "frequency",
    "interval": "interval",
    "by_day": "by_day",
    "byDay": "by_day",
    "by_month_day": "by_month_day",
    "byMonthDay": "by_month_day",
    "count": "count",
    "until": "until",
}

_RRULE_KEYS = {
    "FREQ": "frequency",
    "INTERVAL": "interval",
    "BYDAY": "by_day",
    "BYMONTHDAY": "by_month_day",
    "COUNT": "count",
    "UNTIL": "until",
}

# dtstart used only to validate imported RRULE strings
_RRULE_DTSTART = datetime(2000, 1, 3)

_DAY_NAMES = {
    "monday": Weekday.MO,
    "tuesday": Weekday.TU,
    "wednesday": Weekday.WE,
    "thursday": Weekday.TH,
    "friday": Weekday.FR,
    "saturday": Weekday.SA,
    "sunday": Weekday.SU,
}


def parse_recurrence_rule(raw: Any) -> RecurrenceRule:
    """
    Parse raw recurrence input into a normalized `RecurrenceRule`.

    Accepted inputs
    ---------------
    - A mapping: the JSON document stored on the meeting row
      (`{"frequency": "weekly", "interval": 2, "by_day": ["MO"], ...}`).
      camelCase keys (`byDay`, `byMonthDay`) are accepted too.
    - An RFC 5545 RRULE string, with or without the `RRULE:` prefix
      (`FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10`).
    - An existing `RecurrenceRule`, returned unchanged.

    Raises
    ------
    InvalidRuleError
        Naming the offending field when the input is malformed.
    """
    if isinstance(raw, RecurrenceRule):
        return raw
    if isinstance(raw, str):
        return _build_rule(parse_rrule_string(raw))
    if isinstance(raw, Mapping):
        document: dict[str, Any] = {}
        for key, value in raw.items():
            field = _DOCUMENT_KEYS.get(key)
            if field is None:
                raise InvalidRuleError(str(key), "unknown recurrence field")
            document[field] = value
        return _build_rule(document)
    raise InvalidRuleError(
        "recurrence_rule",
        f"expected a mapping or RRULE string, got {type(raw).__name__}",
    )


def parse_rrule_string(value: str) -> dict[str, Any]:
    """
    Import a single RRULE value as a recurrence document (not yet validated).

    dateutil's `rrulestr` checks the RFC 5545 grammar; parts outside the
    supported subset (BYSETPOS, BYMONTH, ...) are then rejected by name.
    """
    text = value.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):].strip()
    if not text:
        raise InvalidRuleError("recurrence_rule", "empty RRULE")
    if ":" in text or len(text.split()) > 1:
        raise InvalidRuleError("recurrence_rule", "expected a single RRULE value")

    try:
        rrulestr(text, dtstart=_RRULE_DTSTART, ignoretz=True)
    except ValueError as exc:
        raise InvalidRuleError("recurrence_rule", f"malformed RRULE: {exc}") from None

    document: dict[str, Any] = {}
    for part in text.split(";"):
        name, _, raw = part.partition("=")
        name = name.strip().upper()
        raw = raw.strip()
        if name == "WKST":
            # weeks always start on Monday
            if raw.upper() != "MO":
                raise InvalidRuleError("wkst", "only WKST=MO is supported")
            continue
        field = _RRULE_KEYS.get(name)
        if field is None:
            raise InvalidRuleError(name.lower(), "unsupported RRULE part")
        if field in ("by_day", "by_month_day"):
            document[field] = [item.strip() for item in raw.split(",")]
        elif field == "until":
            document[field] = date_parser.parse(raw, ignoretz=True).date()
        else:
            document[field] = raw
    return document


def _build_rule(document: dict[str, Any]) -> RecurrenceRule:
    frequency = _parse_frequency(document.get("frequency"))
    interval = _parse_positive_int("interval", document.get("interval"), default=1)
    by_day = _parse_by_day(document.get("by_day"))
    by_month_day = _parse_by_month_day(document.get("by_month_day"))
    count = _parse_positive_int("count", document.get("count"), default=None)
    until = _parse_until(document.get("until"))

    if count is not None and until is not None:
        raise InvalidRuleError("until", "count and until are mutually exclusive")

    return RecurrenceRule(
        frequency=frequency,
        interval=interval,
        by_day=by_day,
        by_month_day=by_month_day,
        count=count,
        until=until,
    )


def _parse_frequency(value: Any) -> Frequency:
    if value is None:
        raise InvalidRuleError("frequency", "frequency is required")
    if isinstance(value, Frequency):
        return value
    if not isinstance(value, str):
        raise InvalidRuleError("frequency", f"expected a string, got {value!r}")
    try:
        return Frequency(value.strip().lower())
    except ValueError:
        allowed = ", ".join(f.value for f in Frequency)
        raise InvalidRuleError("frequency", f"must be one of: {allowed}") from None


def _parse_positive_int(field: str, value: Any, default: int | None) -> int | None:
    if value is None:
        return default
    # bool is an int subclass; True must not silently become 1
    if isinstance(value, bool):
        raise InvalidRuleError(field, f"expected an integer, got {value!r}")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise InvalidRuleError(field, f"expected an integer, got {value!r}") from None
    if not isinstance(value, int):
        raise InvalidRuleError(field, f"expected an integer, got {value!r}")
    if value < 1:
        raise InvalidRuleError(field, "must be at least 1")
    return value


def _parse_by_day(value: Any) -> tuple[Weekday, ...] | None:
    if value is None:
        return None
    if isinstance(value, (str, Weekday)):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidRuleError("by_day", f"expected a list of weekdays, got {value!r}")
    if not value:
        raise InvalidRuleError("by_day", "must not be empty")

    days: set[Weekday] = set()
    for item in value:
        if isinstance(item, Weekday):
            days.add(item)
            continue
        if not isinstance(item, str):
            raise InvalidRuleError("by_day", f"invalid weekday {item!r}")
        token = item.strip()
        if token and token[0] in "+-0123456789":
            raise InvalidRuleError("by_day", f"ordinal weekdays are not supported ({item!r})")
        day = _DAY_NAMES.get(token.lower())
        if day is None:
            try:
                day = Weekday(token.upper())
            except ValueError:
                raise InvalidRuleError("by_day", f"invalid weekday {item!r}") from None
        days.add(day)
    return tuple(sorted(days, key=lambda d: d.index))


def _parse_by_month_day(value: Any) -> tuple[int, ...] | None:
    if value is None:
        return None
    if isinstance(value, (int, str)):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidRuleError("by_month_day", f"expected a list of days, got {value!r}")
    if not value:
        raise InvalidRuleError("by_month_day", "must not be empty")

    days: set[int] = set()
    for item in value:
        if isinstance(item, bool):
            raise InvalidRuleError("by_month_day", f"invalid day {item!r}")
        try:
            day = int(item)
        except (TypeError, ValueError):
            raise InvalidRuleError("by_month_day", f"invalid day {item!r}") from None
        if not 1 <= day <= 31:
            raise InvalidRuleError("by_month_day", f"day {day} outside 1..31")
        days.add(day)
    return tuple(sorted(days))


def _parse_until(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise InvalidRuleError("until", f"expected YYYY-MM-DD, got {value!r}") from None
    raise InvalidRuleError("until", f"expected a date, got {value!r}")
