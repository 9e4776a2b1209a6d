"""Template matcher — decides whether a recurrence is due on a local date.

No I/O: this module only inspects dates.
"""

from __future__ import annotations

import calendar
from datetime import date

from taskpulse.data.models import WEEKDAY_NAMES, Recurrence, RecurrenceKind, RecurrenceTemplate


_WEEKDAY_LOOKUP = {name.lower(): idx for idx, name in enumerate(WEEKDAY_NAMES)}
_WEEKDAY_LOOKUP.update({name[:3].lower(): idx for idx, name in enumerate(WEEKDAY_NAMES)})


def parse_weekdays(details: str) -> frozenset[int]:
    """Parse "Monday, wed,Fri" into {0, 2, 4}.

    Raises ValueError on an unknown day name.
    """
    days: set[int] = set()
    for token in details.split(","):
        token = token.strip().lower()
        if not token:
            continue
        if token not in _WEEKDAY_LOOKUP:
            raise ValueError(f"Unknown weekday: {token!r}")
        days.add(_WEEKDAY_LOOKUP[token])
    return frozenset(days)


def format_weekdays(weekdays) -> str:
    """Inverse of parse_weekdays: {4, 0} -> "Monday,Friday"."""
    return ",".join(WEEKDAY_NAMES[d] for d in sorted(weekdays))


def effective_day_of_month(target_day: int, year: int, month: int) -> int:
    """Clamp *target_day* to the length of the month.

    A template for the 31st fires on the 30th in April and on the 28th or
    29th in February.
    """
    return min(target_day, calendar.monthrange(year, month)[1])


def is_due_on(template: RecurrenceTemplate | Recurrence, local_date: date) -> bool:
    """Return True if the recurrence is due on *local_date*.

    Accepts a template or a bare Recurrence. Active/paused flags are not
    considered here.
    """
    rec = template.recurrence if isinstance(template, RecurrenceTemplate) else template

    if rec.kind is RecurrenceKind.DAILY:
        return True
    if rec.kind is RecurrenceKind.WEEKLY:
        return local_date.weekday() in rec.weekdays
    if rec.kind is RecurrenceKind.MONTHLY:
        if rec.day_of_month is None:
            return False
        return local_date.day == effective_day_of_month(
            rec.day_of_month, local_date.year, local_date.month,
        )
    return False
