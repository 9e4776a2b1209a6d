"""
TaskPulse — Notification Scheduler.

Called once per minute by the external trigger. For every user, in order:

1. resolve the user's local time;
2. run the task side effects (instantiate due templates, record yesterday's
   misses, move stale tasks to overdue) so every write is durable before
   anything is sent;
3. evaluate each notification kind. An occurrence moves
   IDLE -> DUE -> SENT, or ends SUPPRESSED_ALREADY_SENT when the send log
   already holds (user, kind, subject, cycle).

The send log claim is an insert-on-conflict, so a double-fired tick sends
once. Failures are isolated per user and per kind; one user can never
starve the rest of the batch.

This module is provider-agnostic: it depends on the store and channel
ports, not on SQLite, Telegram or pywebpush.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from taskpulse.config import settings
from taskpulse.core import briefs
from taskpulse.core.clock import cycle_key, local_now, minutes_of_day, parse_hhmm
from taskpulse.core.instantiator import instantiate_due_templates, mark_overdue_instances
from taskpulse.core.recurrence import is_due_on
from taskpulse.core.streaks import previous_day, sweep_missed_cycles
from taskpulse.data.models import (
    BRIEF_KINDS,
    REMINDER_KINDS,
    NotificationKind,
    NotificationMessage,
    SendRecord,
    UserNotificationSettings,
)
from taskpulse.ports.store_port import StoreError

if TYPE_CHECKING:
    from taskpulse.core.dispatcher import DispatchResult, Dispatcher
    from taskpulse.ports.store_port import NoteStore, SendLogStore, SettingsStore, TemplateStore

logger = logging.getLogger(__name__)

ALL_KINDS = tuple(NotificationKind)


class NotificationState(Enum):
    IDLE = "idle"
    DUE = "due"
    SENT = "sent"
    SUPPRESSED_ALREADY_SENT = "suppressed_already_sent"


@dataclass
class Evaluation:
    user_id: str
    kind: NotificationKind
    state: NotificationState
    subject_id: str = ""
    cycle_key: str = ""
    dispatch: DispatchResult | None = None


@dataclass
class TickReport:
    users: int = 0
    errors: int = 0
    evaluations: list[Evaluation] = field(default_factory=list)

    def count(self, state: NotificationState) -> int:
        return sum(1 for e in self.evaluations if e.state is state)

    @property
    def sent(self) -> int:
        return self.count(NotificationState.SENT)

    @property
    def suppressed(self) -> int:
        return self.count(NotificationState.SUPPRESSED_ALREADY_SENT)


def is_due_at(scheduled: str, now_local: datetime, catch_up: bool) -> bool:
    """Is a "HH:MM" local schedule due at *now_local*?

    Exact mode: only during the scheduled minute.
    Catch-up mode: any minute from the scheduled one until local midnight,
    so a delayed or skipped tick still fires (once, via the send log).
    """
    target = minutes_of_day(*parse_hhmm(scheduled))
    current = minutes_of_day(now_local.hour, now_local.minute)
    if catch_up:
        return current >= target
    return current == target


class NotificationScheduler:
    """Per-tick evaluation of every user's notifications."""

    def __init__(
        self,
        templates: TemplateStore,
        notes: NoteStore,
        user_settings: SettingsStore,
        send_log: SendLogStore,
        dispatcher: Dispatcher,
        catch_up: bool | None = None,
    ) -> None:
        self._templates = templates
        self._notes = notes
        self._settings = user_settings
        self._send_log = send_log
        self._dispatcher = dispatcher
        self._catch_up = settings.SCHEDULER_CATCH_UP if catch_up is None else catch_up

    # -- users -------------------------------------------------------------

    def _load_users(self) -> list[UserNotificationSettings]:
        """Users with settings, plus template owners who never configured any.

        The latter get the default timezone and no channels.
        """
        users = {p.user_id: p for p in self._settings.list_settings()}
        for user_id in self._templates.list_user_ids():
            users.setdefault(user_id, UserNotificationSettings(user_id=user_id))
        return list(users.values())

    async def run_tick(
        self,
        now_utc: datetime | None = None,
        kinds: Iterable[NotificationKind] = ALL_KINDS,
    ) -> TickReport:
        """Process every user once. Never raises for a single user's failure."""
        now_utc = now_utc or datetime.now(timezone.utc)
        kinds = tuple(kinds)
        report = TickReport()

        try:
            users = self._load_users()
        except StoreError as exc:
            logger.error("Tick aborted, cannot list users: %s", exc)
            report.errors += 1
            return report

        for prefs in users:
            report.users += 1
            try:
                await self.run_for_user(prefs, now_utc, kinds, report)
            except Exception:
                logger.exception("[User %s] Unexpected failure, skipping", prefs.user_id)
                report.errors += 1

        logger.info(
            "Tick done: %d users, %d sent, %d suppressed, %d errors",
            report.users, report.sent, report.suppressed, report.errors,
        )
        return report

    async def run_for_user(
        self,
        prefs: UserNotificationSettings,
        now_utc: datetime,
        kinds: Iterable[NotificationKind],
        report: TickReport,
    ) -> None:
        local = local_now(now_utc, prefs.timezone)

        report.errors += self._maintain_tasks(prefs.user_id, local.date(), now_utc)

        if not self._dispatcher.can_deliver(prefs):
            logger.debug("[User %s] No deliverable notification channel", prefs.user_id)
            return

        for kind in kinds:
            try:
                report.evaluations.extend(await self._evaluate_kind(prefs, kind, local, now_utc))
            except Exception as exc:
                logger.error("[User %s] %s evaluation failed: %s", prefs.user_id, kind.value, exc)
                report.errors += 1

    def _maintain_tasks(self, user_id: str, today: date, now_utc: datetime) -> int:
        """Run each task side effect on its own; returns the number that failed."""
        steps = (
            ("instantiation", lambda: instantiate_due_templates(self._templates, user_id, today)),
            ("miss sweep", lambda: sweep_missed_cycles(self._templates, user_id, previous_day(today))),
            ("overdue move", lambda: mark_overdue_instances(self._templates, user_id, today, now_utc)),
        )
        failed = 0
        for name, step in steps:
            try:
                step()
            except Exception as exc:
                logger.error("[User %s] Task %s failed: %s", user_id, name, exc)
                failed += 1
        return failed

    # -- kinds -------------------------------------------------------------

    async def _evaluate_kind(
        self,
        prefs: UserNotificationSettings,
        kind: NotificationKind,
        local: datetime,
        now_utc: datetime,
    ) -> list[Evaluation]:
        user_id = prefs.user_id
        today = local.date()

        if kind is NotificationKind.MORNING_BRIEF:
            if not prefs.morning_brief_time:
                return []
            return [await self._fire(
                prefs, kind, "", prefs.morning_brief_time, local, now_utc,
                lambda: briefs.build_daily_brief(self._templates, user_id, today, "morning"),
            )]

        if kind is NotificationKind.EVENING_BRIEF:
            if not prefs.evening_brief_time:
                return []
            return [await self._fire(
                prefs, kind, "", prefs.evening_brief_time, local, now_utc,
                lambda: briefs.build_daily_brief(self._templates, user_id, today, "evening"),
            )]

        if kind is NotificationKind.WEEKLY_BRIEF:
            if prefs.weekly_brief_day is None or not prefs.weekly_brief_time:
                return []
            if today.weekday() != prefs.weekly_brief_day:
                return [Evaluation(user_id, kind, NotificationState.IDLE)]
            return [await self._fire(
                prefs, kind, "", prefs.weekly_brief_time, local, now_utc,
                lambda: briefs.build_weekly_brief(self._templates, user_id, today),
            )]

        if kind is NotificationKind.TASK_REMINDER:
            return await self._task_reminders(prefs, local, now_utc)

        if kind is NotificationKind.NOTE_REMINDER:
            return await self._note_reminders(prefs, local, now_utc)

        return []

    async def _task_reminders(
        self, prefs: UserNotificationSettings, local: datetime, now_utc: datetime,
    ) -> list[Evaluation]:
        today = local.date()
        evaluations = []
        for template in self._templates.list_templates(prefs.user_id):
            if not template.is_live or not template.reminder_time:
                continue
            if not is_due_on(template, today):
                continue
            try:
                instance = self._templates.get_instance_for_cycle(template.id, today.isoformat())
                if instance is None or instance.is_completed:
                    continue
                evaluations.append(await self._fire(
                    prefs, NotificationKind.TASK_REMINDER, str(template.id),
                    template.reminder_time, local, now_utc,
                    _ready(briefs.build_task_reminder(template, instance)),
                ))
            except Exception as exc:
                logger.error(
                    "[User %s] Reminder for template #%d failed: %s", prefs.user_id, template.id, exc,
                )
        return evaluations

    async def _note_reminders(
        self, prefs: UserNotificationSettings, local: datetime, now_utc: datetime,
    ) -> list[Evaluation]:
        evaluations = []
        for note in self._notes.list_notes_with_reminders(prefs.user_id, local.date().isoformat()):
            try:
                evaluations.append(await self._fire(
                    prefs, NotificationKind.NOTE_REMINDER, str(note.id),
                    note.reminder_time, local, now_utc,
                    _ready(briefs.build_note_reminder(note)),
                ))
            except Exception as exc:
                logger.error("[User %s] Reminder for note #%d failed: %s", prefs.user_id, note.id, exc)
        return evaluations

    # -- one occurrence ----------------------------------------------------

    async def _fire(
        self,
        prefs: UserNotificationSettings,
        kind: NotificationKind,
        subject_id: str,
        scheduled: str,
        local: datetime,
        now_utc: datetime,
        build: Callable[[], Awaitable[NotificationMessage]],
    ) -> Evaluation:
        user_id = prefs.user_id
        if not is_due_at(scheduled, local, self._catch_up):
            return Evaluation(user_id, kind, NotificationState.IDLE, subject_id)

        cycle = cycle_key(kind, local.date())
        evaluation = Evaluation(user_id, kind, NotificationState.DUE, subject_id, cycle)

        if self._send_log.was_sent(user_id, kind, cycle, subject_id):
            evaluation.state = NotificationState.SUPPRESSED_ALREADY_SENT
            return evaluation

        # Build before claiming: a failed build leaves the occurrence open
        # for the next tick.
        message = await build()

        record = SendRecord(user_id, kind, cycle, subject_id, now_utc.isoformat())
        if not self._send_log.claim(record):
            evaluation.state = NotificationState.SUPPRESSED_ALREADY_SENT
            return evaluation

        logger.info("[User %s] Sending %s %s for %s", user_id, kind.value, subject_id, cycle)
        evaluation.dispatch = await self._dispatcher.dispatch(message, prefs)
        evaluation.state = NotificationState.SENT
        return evaluation


def _ready(message: NotificationMessage) -> Callable[[], Awaitable[NotificationMessage]]:
    async def _build() -> NotificationMessage:
        return message
    return _build


# ---------------------------------------------------------------------------
# Entry points per notification family
# ---------------------------------------------------------------------------


async def send_due_briefs(
    scheduler: NotificationScheduler, now_utc: datetime | None = None,
) -> TickReport:
    """Morning, evening and weekly briefs only."""
    return await scheduler.run_tick(now_utc, kinds=BRIEF_KINDS)


async def send_due_reminders(
    scheduler: NotificationScheduler, now_utc: datetime | None = None,
) -> TickReport:
    """Task and note reminders only."""
    return await scheduler.run_tick(now_utc, kinds=REMINDER_KINDS)
