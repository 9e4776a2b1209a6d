"""Idempotent instantiator.

Turns due recurrence templates into dated task instances. A template has
at most one incomplete instance at a time, and at most one instance per
cycle; the second rule is a unique constraint in the store, so two
concurrent runs for the same user still produce a single row.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from taskpulse.core.recurrence import is_due_on
from taskpulse.ports.store_port import StoreError

if TYPE_CHECKING:
    from taskpulse.data.models import RecurrenceTemplate, TaskInstance
    from taskpulse.ports.store_port import TemplateStore

logger = logging.getLogger(__name__)


class InstanceOutcome(Enum):
    CREATED = "created"
    ALREADY_PENDING = "already_pending"
    NOT_DUE_TODAY = "not_due_today"
    CYCLE_COMPLETED = "cycle_completed"


@dataclass
class InstanceResult:
    outcome: InstanceOutcome
    instance: TaskInstance | None = None


def instance_cycle_key(local_date: date) -> str:
    """Instances are keyed by their local due date."""
    return local_date.isoformat()


def ensure_instance(
    store: TemplateStore, template: RecurrenceTemplate, local_date: date,
) -> InstanceResult:
    """Create the instance of *template* for *local_date* unless one is live.

    Paused or inactive templates are never due.
    """
    if not template.is_live or not is_due_on(template, local_date):
        return InstanceResult(InstanceOutcome.NOT_DUE_TODAY)

    pending = store.find_pending_instance(template.id)
    if pending is not None:
        logger.debug(
            "Template #%d already has pending instance #%d (%s)",
            template.id, pending.id, pending.due_date,
        )
        return InstanceResult(InstanceOutcome.ALREADY_PENDING, pending)

    key = instance_cycle_key(local_date)
    created = store.insert_instance_if_absent(template, local_date.isoformat(), key)
    if created is not None:
        logger.info(
            "Instantiated '%s' (template #%d) for %s as #%d",
            template.title, template.id, key, created.id,
        )
        return InstanceResult(InstanceOutcome.CREATED, created)

    # Lost the race, or this cycle was already done.
    existing = store.get_instance_for_cycle(template.id, key)
    if existing is not None and existing.is_completed:
        return InstanceResult(InstanceOutcome.CYCLE_COMPLETED, existing)
    return InstanceResult(InstanceOutcome.ALREADY_PENDING, existing)


def instantiate_due_templates(
    store: TemplateStore, user_id: str, local_date: date,
) -> Counter:
    """Run ensure_instance over every active template of a user.

    A store error or a malformed template is logged and the rest still run.
    Returns a Counter of outcomes.
    """
    outcomes: Counter = Counter()
    for template in store.list_templates(user_id):
        try:
            result = ensure_instance(store, template, local_date)
        except (StoreError, ValueError) as exc:
            logger.error("Instantiation failed for template #%d: %s", template.id, exc)
            outcomes["error"] += 1
            continue
        outcomes[result.outcome] += 1

    created = outcomes[InstanceOutcome.CREATED]
    if created:
        logger.info("[User %s] Instantiated %d task(s) for %s", user_id, created, local_date)
    return outcomes


def mark_overdue_instances(
    store: TemplateStore, user_id: str, local_date: date, now: datetime | None = None,
) -> int:
    """Move incomplete instances due before *local_date* to the overdue board."""
    now = now or datetime.now(timezone.utc)
    moved = store.move_overdue(user_id, local_date.isoformat(), now.isoformat())
    if moved:
        logger.info("[User %s] Moved %d task(s) to overdue", user_id, moved)
    return moved
