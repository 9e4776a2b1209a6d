"""
TaskPulse — Data Models.

Recurrence templates are authored once by the user; the worker turns them
into dated task instances, keeps their habit metrics current, and reads the
user's notification settings to decide what to send and where.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

WEEKDAY_NAMES = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
)

OVERDUE_BOARD = "overdue"


class RecurrenceKind(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotificationKind(Enum):
    MORNING_BRIEF = "morning_brief"
    EVENING_BRIEF = "evening_brief"
    WEEKLY_BRIEF = "weekly_brief"
    TASK_REMINDER = "task_reminder"
    NOTE_REMINDER = "note_reminder"


BRIEF_KINDS = (
    NotificationKind.MORNING_BRIEF,
    NotificationKind.EVENING_BRIEF,
    NotificationKind.WEEKLY_BRIEF,
)
REMINDER_KINDS = (NotificationKind.TASK_REMINDER, NotificationKind.NOTE_REMINDER)


@dataclass(frozen=True)
class Recurrence:
    """When a template repeats.

    Weekdays use the Python convention: 0 = Monday … 6 = Sunday.
    """

    kind: RecurrenceKind
    weekdays: frozenset[int] = frozenset()
    day_of_month: int | None = None

    @classmethod
    def daily(cls) -> Recurrence:
        return cls(RecurrenceKind.DAILY)

    @classmethod
    def weekly(cls, weekdays) -> Recurrence:
        return cls(RecurrenceKind.WEEKLY, weekdays=frozenset(weekdays))

    @classmethod
    def monthly(cls, day_of_month: int) -> Recurrence:
        if not 1 <= day_of_month <= 31:
            raise ValueError(f"day_of_month out of range: {day_of_month}")
        return cls(RecurrenceKind.MONTHLY, day_of_month=day_of_month)

    @classmethod
    def from_storage(cls, recurrence_type: str, details: str | None) -> Recurrence:
        """Build from the `recurrence_type` / `recurrence_details` columns.

        Weekly details are comma-separated day names ("Monday,Friday"),
        monthly details are the target day of month ("31").
        """
        from taskpulse.core.recurrence import parse_weekdays

        kind = RecurrenceKind(recurrence_type)
        if kind is RecurrenceKind.WEEKLY:
            return cls.weekly(parse_weekdays(details or ""))
        if kind is RecurrenceKind.MONTHLY:
            if not details or not details.strip().isdigit():
                raise ValueError(f"Invalid monthly recurrence details: {details!r}")
            return cls.monthly(int(details))
        return cls.daily()

    def to_storage(self) -> tuple[str, str | None]:
        if self.kind is RecurrenceKind.WEEKLY:
            from taskpulse.core.recurrence import format_weekdays

            return self.kind.value, format_weekdays(self.weekdays)
        if self.kind is RecurrenceKind.MONTHLY:
            return self.kind.value, str(self.day_of_month)
        return self.kind.value, None


@dataclass
class HabitMetrics:
    """Accumulated streak state of one template."""

    streak: int = 0
    total_completed: int = 0
    last_completed_date: str | None = None        # ISO date YYYY-MM-DD
    missed_days: list[str] = field(default_factory=list)   # sorted ISO dates
    fail_by_weekday: dict[int, int] = field(default_factory=dict)
    success_rate: float = 0.0


@dataclass
class RecurrenceTemplate:
    """A recurring task / habit definition. Never duplicated by the worker."""

    id: int
    user_id: str
    title: str
    recurrence: Recurrence
    description: str = ""
    origin_board: str = "today"
    is_priority: bool = False
    reminder_time: str | None = None              # "HH:MM" local time
    is_active: bool = True
    paused: bool = False
    alert: bool = False                           # last due cycle was missed
    metrics: HabitMetrics = field(default_factory=HabitMetrics)
    created_at: str = ""

    @property
    def is_live(self) -> bool:
        return self.is_active and not self.paused


@dataclass
class TaskInstance:
    """A dated occurrence of a template, or a one-off task (template_id None)."""

    id: int
    user_id: str
    title: str
    due_date: str                                  # ISO date YYYY-MM-DD
    template_id: int | None = None
    cycle_key: str | None = None
    description: str = ""
    is_completed: bool = False
    completed_at: str | None = None
    current_board: str = "today"
    is_priority: bool = False
    overdue: bool = False


@dataclass
class Note:
    """A note; only the reminder fields matter to the worker."""

    id: int
    user_id: str
    title: str
    content: str = ""
    reminder_date: str | None = None               # ISO date YYYY-MM-DD
    reminder_time: str | None = None               # "HH:MM"
    archived: bool = False
    trashed: bool = False


@dataclass
class UserNotificationSettings:
    """Per-user channel configuration and brief schedule."""

    user_id: str
    timezone: str | None = None
    telegram_enabled: bool = False
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    webpush_enabled: bool = False
    morning_brief_time: str | None = None          # "HH:MM"
    evening_brief_time: str | None = None
    weekly_brief_day: int | None = None            # 0 = Monday
    weekly_brief_time: str | None = None

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_enabled and self.telegram_bot_token and self.telegram_chat_id)


@dataclass
class PushSubscription:
    """A browser push subscription (endpoint + keys JSON)."""

    id: int
    user_id: str
    endpoint: str
    subscription: dict


@dataclass
class SendRecord:
    """Proof that (user, kind, subject, cycle) was already notified."""

    user_id: str
    kind: NotificationKind
    cycle_key: str
    subject_id: str = ""
    sent_at: str = ""


@dataclass
class HabitHistoryEntry:
    """Outcome of one due cycle of a template."""

    template_id: int
    cycle_date: str                                # ISO date YYYY-MM-DD
    completed: bool
    recorded_at: str = ""


@dataclass
class NotificationMessage:
    """A prepared message, channel-agnostic."""

    title: str
    body: str
    url: str = "/"
