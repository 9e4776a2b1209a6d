"""Streak / metrics updater.

Pure transitions over HabitMetrics, plus the store-backed entry points that
apply them atomically (one transaction per toggle):

    completing      streak + 1, total + 1, last completion = cycle date,
                    cycle date no longer counted as a miss
    reverting       streak - 1 and total - 1 (floor 0), cycle date counted
                    as a miss again, bucketed by weekday
    missing         streak reset to 0, cycle date counted as a miss

success_rate = total / (total + distinct missed dates), recomputed each time.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from functools import partial
from typing import TYPE_CHECKING

from taskpulse.core.recurrence import is_due_on
from taskpulse.ports.store_port import StoreError

if TYPE_CHECKING:
    from taskpulse.data.models import HabitMetrics, RecurrenceTemplate, TaskInstance
    from taskpulse.ports.store_port import TemplateStore

logger = logging.getLogger(__name__)


def _iso(day: date | str) -> str:
    return day if isinstance(day, str) else day.isoformat()


def success_rate(total_completed: int, missed: int) -> float:
    attempts = total_completed + missed
    if attempts == 0:
        return 0.0
    return total_completed / attempts


def _add_miss(missed: set[str], fails: dict[int, int], day: str) -> None:
    if day in missed:
        return
    missed.add(day)
    weekday = date.fromisoformat(day).weekday()
    fails[weekday] = fails.get(weekday, 0) + 1


def _remove_miss(missed: set[str], fails: dict[int, int], day: str) -> None:
    if day not in missed:
        return
    missed.discard(day)
    weekday = date.fromisoformat(day).weekday()
    remaining = fails.get(weekday, 0) - 1
    if remaining > 0:
        fails[weekday] = remaining
    else:
        fails.pop(weekday, None)


def apply_completion(
    metrics: HabitMetrics, cycle_date: date | str, completing: bool = True,
) -> HabitMetrics:
    """Return new metrics after a cycle was completed (or un-completed)."""
    day = _iso(cycle_date)
    missed = set(metrics.missed_days)
    fails = dict(metrics.fail_by_weekday)

    if completing:
        streak = metrics.streak + 1
        total = metrics.total_completed + 1
        last = day
        _remove_miss(missed, fails, day)
    else:
        streak = max(0, metrics.streak - 1)
        total = max(0, metrics.total_completed - 1)
        last = None if metrics.last_completed_date == day else metrics.last_completed_date
        _add_miss(missed, fails, day)

    return replace(
        metrics,
        streak=streak,
        total_completed=total,
        last_completed_date=last,
        missed_days=sorted(missed),
        fail_by_weekday=fails,
        success_rate=success_rate(total, len(missed)),
    )


def apply_miss(metrics: HabitMetrics, cycle_date: date | str) -> HabitMetrics:
    """Return new metrics after a due cycle passed without completion.

    Recording the same miss twice changes nothing.
    """
    day = _iso(cycle_date)
    if day in metrics.missed_days:
        return metrics
    missed = set(metrics.missed_days)
    fails = dict(metrics.fail_by_weekday)
    _add_miss(missed, fails, day)
    return replace(
        metrics,
        streak=0,
        missed_days=sorted(missed),
        fail_by_weekday=fails,
        success_rate=success_rate(metrics.total_completed, len(missed)),
    )


# ---------------------------------------------------------------------------
# Store-backed entry points
# ---------------------------------------------------------------------------


def record_completion(
    store: TemplateStore,
    template: RecurrenceTemplate,
    cycle_date: date | str,
    completing: bool,
) -> HabitMetrics:
    """Atomically apply a completion (or its reversal) to the template."""
    metrics = store.update_metrics(
        template.id, partial(apply_completion, cycle_date=cycle_date, completing=completing),
    )
    logger.info(
        "Template #%d %s for %s: streak=%d rate=%.2f",
        template.id, "completed" if completing else "reverted",
        _iso(cycle_date), metrics.streak, metrics.success_rate,
    )
    return metrics


def toggle_instance(
    store: TemplateStore,
    instance_id: int,
    completed: bool,
    now: datetime | None = None,
) -> TaskInstance:
    """UI entry point: mark an instance done / not done.

    The instance flag and the template metrics change in one transaction.
    Toggling to the current state changes nothing.
    Raises ValueError for an unknown instance id.
    """
    now = now or datetime.now(timezone.utc)

    def _on_template(metrics: HabitMetrics, instance: TaskInstance) -> HabitMetrics:
        return apply_completion(metrics, instance.due_date, completing=completed)

    return store.set_instance_completed(
        instance_id, completed, now.isoformat(), on_template=_on_template,
    )


def sweep_missed_cycles(store: TemplateStore, user_id: str, yesterday: date) -> int:
    """Record a miss for each live template whose instance for *yesterday*
    is still incomplete. Returns the number of misses recorded.

    Each miss also writes a history row and raises the template's alert
    flag; the next completion clears it.
    """
    recorded = 0
    day = yesterday.isoformat()
    for template in store.list_templates(user_id):
        if not template.is_live or not is_due_on(template, yesterday):
            continue
        if day in template.metrics.missed_days:
            continue
        try:
            instance = store.get_instance_for_cycle(template.id, day)
            if instance is None or instance.is_completed:
                continue
            store.update_metrics(template.id, partial(apply_miss, cycle_date=yesterday))
            store.record_history(template.id, day, completed=False)
        except (StoreError, ValueError) as exc:
            logger.error("Miss sweep failed for template #%d: %s", template.id, exc)
            continue
        recorded += 1
        logger.info("Template #%d missed %s, streak reset", template.id, day)
    return recorded


def previous_day(local_date: date) -> date:
    return local_date - timedelta(days=1)
