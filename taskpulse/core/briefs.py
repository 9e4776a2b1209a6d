"""
TaskPulse — Message builders.

Morning / evening brief: today's pending, done and overdue tasks.
Weekly brief: the last seven days of completions, best streaks and the
weekday habits fail on most.
Reminders: one task or note.

Graceful degradation: the raw summary is always a valid message. When
BRIEF_USE_LLM is on, the LLM may rewrite it; any LLM failure keeps the raw
text.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date, timedelta
from typing import TYPE_CHECKING

from taskpulse.config import settings
from taskpulse.data.models import WEEKDAY_NAMES, NotificationMessage

if TYPE_CHECKING:
    from taskpulse.data.models import Note, RecurrenceTemplate, TaskInstance
    from taskpulse.ports.store_port import TemplateStore

logger = logging.getLogger(__name__)

_NOTE_PREVIEW_CHARS = 200

_POLISH_PROMPT = (
    "Rewrite the following task summary as a short, friendly notification. "
    "Keep every task name. Plain text, under 120 words."
)


def _link(path: str) -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}{path}"


def _bullets(tasks: list[TaskInstance]) -> str:
    return "\n".join(f"  - {t.title}{' (!)' if t.is_priority else ''}" for t in tasks)


async def _polish(raw: str) -> str:
    if not settings.BRIEF_USE_LLM:
        return raw
    from taskpulse.core.llm import complete

    try:
        polished = await complete(system=_POLISH_PROMPT, user_message=raw, max_tokens=300)
    except Exception as exc:
        logger.warning("Brief polishing failed, sending raw text: %s", exc)
        return raw
    return polished.strip() or raw


# ---------------------------------------------------------------------------
# Daily briefs
# ---------------------------------------------------------------------------


def summarize_day(store: TemplateStore, user_id: str, local_date: date) -> str:
    """Plain-text summary of the user's tasks for *local_date*."""
    today = store.list_instances(user_id, due_date=local_date.isoformat())
    overdue = store.list_overdue(user_id)

    pending = [t for t in today if not t.is_completed]
    pending.sort(key=lambda t: not t.is_priority)
    done = [t for t in today if t.is_completed]

    sections = []
    if pending:
        sections.append(f"Pending today ({len(pending)}):\n{_bullets(pending)}")
    else:
        sections.append("Pending today: none")
    if done:
        sections.append(f"Done today ({len(done)}):\n{_bullets(done)}")
    if overdue:
        sections.append(f"Overdue ({len(overdue)}):\n{_bullets(overdue)}")
    return "\n\n".join(sections)


async def build_daily_brief(
    store: TemplateStore, user_id: str, local_date: date, time_of_day: str,
) -> NotificationMessage:
    """Morning or evening brief for *local_date*."""
    if time_of_day == "morning":
        title = "Good morning! Here is your day"
    else:
        title = "Evening wrap-up"
    body = await _polish(summarize_day(store, user_id, local_date))
    return NotificationMessage(title=title, body=body, url=_link("/dashboard"))


# ---------------------------------------------------------------------------
# Weekly brief
# ---------------------------------------------------------------------------


def summarize_week(store: TemplateStore, user_id: str, local_date: date) -> str:
    """Plain-text summary of the seven days ending on *local_date*."""
    start = local_date - timedelta(days=6)
    completed = store.list_completed_between(user_id, start.isoformat(), local_date.isoformat())
    templates = store.list_templates(user_id)
    overdue = store.list_overdue(user_id)

    lines = [
        f"Week {start.isoformat()} to {local_date.isoformat()}",
        f"Completed tasks: {len(completed)}",
        f"Still overdue: {len(overdue)}",
    ]

    streaks = sorted(
        (t for t in templates if t.metrics.streak > 0),
        key=lambda t: t.metrics.streak,
        reverse=True,
    )[:3]
    if streaks:
        lines.append("Best streaks:")
        lines.extend(
            f"  - {t.title}: {t.metrics.streak} in a row ({t.metrics.success_rate:.0%})"
            for t in streaks
        )

    fails: Counter = Counter()
    for t in templates:
        fails.update(t.metrics.fail_by_weekday)
    if fails:
        weekday, count = fails.most_common(1)[0]
        lines.append(f"Most missed day: {WEEKDAY_NAMES[weekday]} ({count} misses)")
    return "\n".join(lines)


async def build_weekly_brief(
    store: TemplateStore, user_id: str, local_date: date,
) -> NotificationMessage:
    body = await _polish(summarize_week(store, user_id, local_date))
    return NotificationMessage(title="Your weekly summary", body=body, url=_link("/dashboard"))


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


def build_task_reminder(
    template: RecurrenceTemplate, instance: TaskInstance | None = None,
) -> NotificationMessage:
    target = instance.id if instance is not None else template.id
    return NotificationMessage(
        title=f"Task reminder: {template.title}",
        body=f'Your task "{template.title}" is scheduled for now. Tap to complete it.',
        url=_link(f"/tasks?complete_task_id={target}"),
    )


def build_note_reminder(note: Note) -> NotificationMessage:
    preview = note.content.strip()
    if len(preview) > _NOTE_PREVIEW_CHARS:
        preview = preview[:_NOTE_PREVIEW_CHARS].rstrip() + "…"
    return NotificationMessage(
        title=f"Note reminder: {note.title}",
        body=preview or "You asked to be reminded about this note.",
        url=_link(f"/notes?note_id={note.id}"),
    )
