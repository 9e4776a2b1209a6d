"""Record store ports — abstract interfaces over persisted state.

The scheduler, instantiator and dispatcher receive these explicitly so
tests can substitute fakes. The SQLite classes in taskpulse.data.db are the
production implementations.
"""

from __future__ import annotations

from typing import Callable, Protocol

from taskpulse.data.models import (
    HabitMetrics,
    Note,
    NotificationKind,
    PushSubscription,
    RecurrenceTemplate,
    SendRecord,
    TaskInstance,
    UserNotificationSettings,
)


class StoreError(Exception):
    """Raised when the record store cannot complete a read or write."""


class TemplateStore(Protocol):
    def list_user_ids(self) -> list[str]: ...

    def list_templates(self, user_id: str, active_only: bool = True) -> list[RecurrenceTemplate]: ...

    def get_template(self, template_id: int) -> RecurrenceTemplate | None: ...

    def find_pending_instance(self, template_id: int) -> TaskInstance | None: ...

    def get_instance_for_cycle(self, template_id: int, cycle_key: str) -> TaskInstance | None: ...

    def insert_instance_if_absent(
        self, template: RecurrenceTemplate, due_date: str, cycle_key: str,
    ) -> TaskInstance | None: ...

    def update_metrics(
        self, template_id: int, fn: Callable[[HabitMetrics], HabitMetrics],
    ) -> HabitMetrics: ...

    def set_instance_completed(
        self,
        instance_id: int,
        completed: bool,
        completed_at: str | None,
        on_template: Callable[[HabitMetrics, TaskInstance], HabitMetrics] | None = None,
    ) -> TaskInstance: ...

    def move_overdue(self, user_id: str, before_date: str, moved_at: str) -> int: ...

    def record_history(self, template_id: int, cycle_date: str, completed: bool) -> None: ...

    def list_instances(
        self, user_id: str, due_date: str | None = None, template_id: int | None = None,
    ) -> list[TaskInstance]: ...

    def list_overdue(self, user_id: str) -> list[TaskInstance]: ...

    def list_completed_between(self, user_id: str, start: str, end: str) -> list[TaskInstance]: ...


class NoteStore(Protocol):
    def list_notes_with_reminders(self, user_id: str, reminder_date: str) -> list[Note]: ...


class SettingsStore(Protocol):
    def list_settings(self) -> list[UserNotificationSettings]: ...

    def get_settings(self, user_id: str) -> UserNotificationSettings | None: ...


class SubscriptionStore(Protocol):
    def list_subscriptions(self, user_id: str) -> list[PushSubscription]: ...

    def delete_subscription(self, subscription_id: int) -> bool: ...


class SendLogStore(Protocol):
    def claim(self, record: SendRecord) -> bool: ...

    def was_sent(
        self, user_id: str, kind: NotificationKind, cycle_key: str, subject_id: str = "",
    ) -> bool: ...
