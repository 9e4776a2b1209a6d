"""Clock / timezone resolver — pure functions, no I/O.

Every per-user decision (is a template due, is a brief due, which cycle a
send belongs to) is made on the user's local wall clock. Users store an
arbitrary IANA zone name; missing or unknown names fall back to
settings.DEFAULT_TIMEZONE.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskpulse.config import settings
from taskpulse.data.models import NotificationKind

logger = logging.getLogger(__name__)


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for *name*, or the default zone."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to %s", name, settings.DEFAULT_TIMEZONE)
    return ZoneInfo(settings.DEFAULT_TIMEZONE)


def local_now(utc_instant: datetime, timezone: str | None) -> datetime:
    """Convert a UTC instant to the user's local wall-clock time.

    Naive instants are taken to be UTC. The result is tz-aware.
    """
    if utc_instant.tzinfo is None:
        utc_instant = utc_instant.replace(tzinfo=dt_timezone.utc)
    return utc_instant.astimezone(resolve_timezone(timezone))


def local_today(utc_instant: datetime, timezone: str | None) -> date:
    return local_now(utc_instant, timezone).date()


def day_key(local_date: date) -> str:
    return local_date.isoformat()


def week_key(local_date: date) -> str:
    """ISO week, e.g. "2024-W09". Weeks start on Monday."""
    year, week, _ = local_date.isocalendar()
    return f"{year}-W{week:02d}"


def cycle_key(kind: NotificationKind, local_date: date) -> str:
    """The cycle a notification of *kind* on *local_date* belongs to."""
    if kind is NotificationKind.WEEKLY_BRIEF:
        return week_key(local_date)
    return day_key(local_date)


def parse_hhmm(value: str) -> tuple[int, int]:
    """Parse "HH:MM" (seconds tolerated) into (hour, minute).

    Raises ValueError on malformed input.
    """
    parts = value.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Not an HH:MM time: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Hour/minute out of range: {value!r}")
    return hour, minute


def minutes_of_day(hour: int, minute: int) -> int:
    return hour * 60 + minute
