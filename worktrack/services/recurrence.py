"""
Recurrence rules evaluated against calendar dates.

Everything in this module is pure: no database access and no wall-clock reads.
Callers pass the date they care about; the HTTP layer is the only place that
substitutes "today".

Rule semantics (days/months are the parsed JSON columns of a routine):

- daily: every day
- weekly: the weekday abbreviations in days, or Monday when days is absent
- monthly: the days-of-month in days, or the 1st when days is absent
- bimonthly: the 1st of each month in months, or of every even month
- yearly: days must be [month, day]; anything else is never due
- custom: days is a list of ISO dates
- any other rule, or none at all: never due

"Absent" means NULL. An empty list is present and matches nothing.
"""
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, Optional, Tuple

from worktrack.models.enums import RecurrenceRule
from worktrack.services.errors import RecurrenceFormatError

# Upper bound on the forward scan in get_next_due_date
NEXT_DUE_SCAN_DAYS = 365

# Indexed Sun=0 .. Sat=6
DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def to_calendar_date(value) -> date:
    """Reduce a date, datetime or ISO string to a calendar date."""
    # datetime is a subclass of date, so it must be checked first
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"Cannot interpret {value!r} as a calendar date")


def day_window(day: date) -> Tuple[date, date]:
    """Half-open [start, end) window covering exactly one calendar day."""
    start = to_calendar_date(day)
    return start, start + timedelta(days=1)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day in [start, end)."""
    current = start
    while current < end:
        yield current
        current += timedelta(days=1)


def weekday_name(day: date) -> str:
    # date.weekday() is Mon=0, DAY_NAMES is Sun=0
    return DAY_NAMES[(day.weekday() + 1) % 7]


def parse_recurrence_list(raw: Optional[str], field: str) -> Optional[tuple]:
    """
    Parse a stored JSON list column.

    Empty text and JSON null both mean "absent". Anything that is not valid
    JSON, or is JSON but not a list, raises RecurrenceFormatError.
    """
    if raw is None or raw == "":
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise RecurrenceFormatError(
            f"Malformed {field}: {raw!r} is not valid JSON", field=field, raw=raw
        ) from e

    if value is None:
        return None
    if not isinstance(value, list):
        raise RecurrenceFormatError(
            f"Malformed {field}: expected a JSON list, got {raw!r}", field=field, raw=raw
        )
    return tuple(value)


def encode_recurrence_list(values: Optional[Iterable]) -> Optional[str]:
    """Inverse of parse_recurrence_list for values coming from the API."""
    if values is None:
        return None
    return json.dumps(list(values))


@dataclass(frozen=True)
class RecurrenceSpec:
    """The parts of a routine that decide when it is due."""
    rule: Optional[str]
    days: Optional[tuple] = None
    months: Optional[tuple] = None

    @classmethod
    def from_raw(
        cls,
        rule: Optional[str],
        days_json: Optional[str] = None,
        months_json: Optional[str] = None,
    ) -> "RecurrenceSpec":
        return cls(
            rule=rule,
            days=parse_recurrence_list(days_json, "recurrence_days"),
            months=parse_recurrence_list(months_json, "recurrence_months"),
        )

    @classmethod
    def from_item(cls, item) -> "RecurrenceSpec":
        return cls.from_raw(item.recurrence_rule, item.recurrence_days, item.recurrence_months)


def is_due_on_date(spec: RecurrenceSpec, on) -> bool:
    """Decide whether the recurrence described by spec has an occurrence on a date."""
    day = to_calendar_date(on)
    rule = spec.rule
    days = spec.days
    months = spec.months

    if rule == RecurrenceRule.DAILY:
        return True

    if rule == RecurrenceRule.WEEKLY:
        if days is not None:
            wanted = set()
            for entry in days:
                if not isinstance(entry, str):
                    raise RecurrenceFormatError(
                        f"Weekly recurrence days must be weekday names, got {entry!r}",
                        field="recurrence_days",
                    )
                wanted.add(entry.lower()[:3])
            return weekday_name(day) in wanted
        return day.weekday() == 0

    if rule == RecurrenceRule.MONTHLY:
        if days is not None:
            return day.day in days
        return day.day == 1

    if rule == RecurrenceRule.BIMONTHLY:
        if months is not None:
            return day.month in months and day.day == 1
        return day.month % 2 == 0 and day.day == 1

    if rule == RecurrenceRule.YEARLY:
        if days is not None and len(days) == 2:
            return day.month == days[0] and day.day == days[1]
        return False

    if rule == RecurrenceRule.CUSTOM:
        if days is not None:
            return day.isoformat() in days
        return False

    return False


def get_next_due_date(
    spec: RecurrenceSpec,
    from_date,
    fallback_to_from_date: bool = True,
) -> Optional[date]:
    """
    First due date on or after from_date, scanning at most NEXT_DUE_SCAN_DAYS days.

    When nothing is due inside the window the result is from_date itself if
    fallback_to_from_date is set (so a custom rule whose dates are all in the
    past reads as "due today"), otherwise None.
    """
    start = to_calendar_date(from_date)
    for offset in range(NEXT_DUE_SCAN_DAYS):
        candidate = start + timedelta(days=offset)
        if is_due_on_date(spec, candidate):
            return candidate
    return start if fallback_to_from_date else None
