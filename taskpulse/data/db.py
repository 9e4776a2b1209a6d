"""
TaskPulse — Record store.

SQLite-backed storage for recurrence templates, task instances, notes,
notification settings, push subscriptions and the notification send log.
All tables live in one database file; each store class owns its tables.

Uniqueness the scheduler relies on is enforced here, not by call order:
one instance per (template_id, cycle_key), one send record per
(user_id, kind, subject_id, cycle_key).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from taskpulse.data.models import (
    HabitHistoryEntry,
    HabitMetrics,
    Note,
    NotificationKind,
    OVERDUE_BOARD,
    PushSubscription,
    Recurrence,
    RecurrenceTemplate,
    SendRecord,
    TaskInstance,
    UserNotificationSettings,
)
from taskpulse.ports.store_port import StoreError

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _SQLiteStore:
    """Connection handling shared by every store."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from taskpulse.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            self._init_db(conn)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    @contextmanager
    def _connection(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction.

        Commits on success, rolls back on error, always closes.
        sqlite3 errors surface as StoreError.
        """
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"{type(self).__name__}: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Templates and instances
# ---------------------------------------------------------------------------


class TemplateDB(_SQLiteStore):
    """Recurrence templates and the task instances spawned from them."""

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS recurrence_templates (
                id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id             TEXT    NOT NULL,
                title               TEXT    NOT NULL,
                description         TEXT    NOT NULL DEFAULT '',
                recurrence_type     TEXT    NOT NULL,
                recurrence_details  TEXT,
                origin_board        TEXT    NOT NULL DEFAULT 'today',
                is_priority         INTEGER NOT NULL DEFAULT 0,
                reminder_time       TEXT,
                is_active           INTEGER NOT NULL DEFAULT 1,
                paused              INTEGER NOT NULL DEFAULT 0,
                alert               INTEGER NOT NULL DEFAULT 0,
                streak              INTEGER NOT NULL DEFAULT 0,
                total_completed     INTEGER NOT NULL DEFAULT 0,
                last_completed_date TEXT,
                missed_days         TEXT    NOT NULL DEFAULT '[]',
                fail_by_weekday     TEXT    NOT NULL DEFAULT '{}',
                success_rate        REAL    NOT NULL DEFAULT 0,
                created_at          TEXT    NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS task_instances (
                id                      INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id                 TEXT    NOT NULL,
                template_id             INTEGER
                    REFERENCES recurrence_templates(id) ON DELETE CASCADE,
                title                   TEXT    NOT NULL,
                description             TEXT    NOT NULL DEFAULT '',
                due_date                TEXT    NOT NULL,
                cycle_key               TEXT,
                is_completed            INTEGER NOT NULL DEFAULT 0,
                completed_at            TEXT,
                current_board           TEXT    NOT NULL DEFAULT 'today',
                is_priority             INTEGER NOT NULL DEFAULT 0,
                overdue                 INTEGER NOT NULL DEFAULT 0,
                last_moved_to_overdue_at TEXT,
                created_at              TEXT    NOT NULL,
                UNIQUE (template_id, cycle_key)
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_pending "
            "ON task_instances (template_id, is_completed)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS habit_history (
                template_id INTEGER NOT NULL
                    REFERENCES recurrence_templates(id) ON DELETE CASCADE,
                cycle_date  TEXT    NOT NULL,
                completed   INTEGER NOT NULL,
                recorded_at TEXT    NOT NULL,
                UNIQUE (template_id, cycle_date)
            )
        """)
        logger.debug("Template tables initialized at %s", self._db_path)

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_metrics(row: sqlite3.Row) -> HabitMetrics:
        return HabitMetrics(
            streak=row["streak"],
            total_completed=row["total_completed"],
            last_completed_date=row["last_completed_date"],
            missed_days=list(json.loads(row["missed_days"] or "[]")),
            fail_by_weekday={
                int(k): int(v) for k, v in json.loads(row["fail_by_weekday"] or "{}").items()
            },
            success_rate=row["success_rate"],
        )

    @classmethod
    def _row_to_template(cls, row: sqlite3.Row) -> RecurrenceTemplate:
        return RecurrenceTemplate(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            recurrence=Recurrence.from_storage(row["recurrence_type"], row["recurrence_details"]),
            origin_board=row["origin_board"],
            is_priority=bool(row["is_priority"]),
            reminder_time=row["reminder_time"],
            is_active=bool(row["is_active"]),
            paused=bool(row["paused"]),
            alert=bool(row["alert"]),
            metrics=cls._row_to_metrics(row),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> TaskInstance:
        return TaskInstance(
            id=row["id"],
            user_id=row["user_id"],
            template_id=row["template_id"],
            title=row["title"],
            description=row["description"],
            due_date=row["due_date"],
            cycle_key=row["cycle_key"],
            is_completed=bool(row["is_completed"]),
            completed_at=row["completed_at"],
            current_board=row["current_board"],
            is_priority=bool(row["is_priority"]),
            overdue=bool(row["overdue"]),
        )

    # -- templates ---------------------------------------------------------

    def add_template(
        self,
        user_id: str,
        title: str,
        recurrence: Recurrence,
        description: str = "",
        origin_board: str = "today",
        is_priority: bool | None = None,
        reminder_time: str | None = None,
    ) -> RecurrenceTemplate:
        """Insert a new template. Priority defaults to the board's priority."""
        if is_priority is None:
            is_priority = "high_priority" in origin_board
        recurrence_type, details = recurrence.to_storage()
        created_at = _utc_now_iso()

        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO recurrence_templates
                    (user_id, title, description, recurrence_type, recurrence_details,
                     origin_board, is_priority, reminder_time, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, title, description, recurrence_type, details,
                    origin_board, int(is_priority), reminder_time, created_at,
                ),
            )
            template_id = cursor.lastrowid

        logger.info("Template added: #%d '%s' (%s)", template_id, title, recurrence_type)
        return RecurrenceTemplate(
            id=template_id,
            user_id=user_id,
            title=title,
            description=description,
            recurrence=recurrence,
            origin_board=origin_board,
            is_priority=is_priority,
            reminder_time=reminder_time,
            created_at=created_at,
        )

    def get_template(self, template_id: int) -> RecurrenceTemplate | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM recurrence_templates WHERE id = ?", (template_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_template(row)

    def list_templates(self, user_id: str, active_only: bool = True) -> list[RecurrenceTemplate]:
        query = "SELECT * FROM recurrence_templates WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY id"
        with self._connection() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        templates = []
        for row in rows:
            try:
                templates.append(self._row_to_template(row))
            except ValueError as exc:
                logger.error("Skipping template #%d with bad recurrence: %s", row["id"], exc)
        return templates

    def list_user_ids(self) -> list[str]:
        """Owners of at least one active template."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM recurrence_templates WHERE is_active = 1 ORDER BY user_id"
            ).fetchall()
        return [r["user_id"] for r in rows]

    def set_paused(self, template_id: int, paused: bool) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE recurrence_templates SET paused = ? WHERE id = ?",
                (int(paused), template_id),
            )
        return cursor.rowcount > 0

    def deactivate_template(self, template_id: int) -> bool:
        """Soft-disable a template; its history stays."""
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE recurrence_templates SET is_active = 0 WHERE id = ? AND is_active = 1",
                (template_id,),
            )
        deactivated = cursor.rowcount > 0
        if deactivated:
            logger.info("Template #%d deactivated", template_id)
        return deactivated

    def delete_template(self, template_id: int) -> bool:
        """Hard-delete on explicit user request; instances cascade."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM recurrence_templates WHERE id = ?", (template_id,),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Template #%d deleted with its instances", template_id)
        return deleted

    def update_metrics(
        self, template_id: int, fn: Callable[[HabitMetrics], HabitMetrics],
    ) -> HabitMetrics:
        """Atomically read the template's metrics, apply *fn*, write back."""
        with self._connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM recurrence_templates WHERE id = ?", (template_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Template {template_id} not found")
            metrics = fn(self._row_to_metrics(row))
            self._write_metrics(conn, template_id, metrics)
        return metrics

    @staticmethod
    def _write_metrics(conn: sqlite3.Connection, template_id: int, metrics: HabitMetrics) -> None:
        conn.execute(
            """
            UPDATE recurrence_templates
               SET streak = ?, total_completed = ?, last_completed_date = ?,
                   missed_days = ?, fail_by_weekday = ?, success_rate = ?
             WHERE id = ?
            """,
            (
                metrics.streak,
                metrics.total_completed,
                metrics.last_completed_date,
                json.dumps(sorted(metrics.missed_days)),
                json.dumps({str(k): v for k, v in sorted(metrics.fail_by_weekday.items())}),
                metrics.success_rate,
                template_id,
            ),
        )

    # -- instances ---------------------------------------------------------

    def add_task(
        self,
        user_id: str,
        title: str,
        due_date: str,
        description: str = "",
        board: str = "today",
        is_priority: bool = False,
    ) -> TaskInstance:
        """Insert a one-off task (no template)."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO task_instances
                    (user_id, title, description, due_date, current_board, is_priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, title, description, due_date, board, int(is_priority), _utc_now_iso()),
            )
            task_id = cursor.lastrowid
        return TaskInstance(
            id=task_id,
            user_id=user_id,
            title=title,
            description=description,
            due_date=due_date,
            current_board=board,
            is_priority=is_priority,
        )

    def get_instance(self, instance_id: int) -> TaskInstance | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE id = ?", (instance_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_instance(row)

    def list_instances(
        self, user_id: str, due_date: str | None = None, template_id: int | None = None,
    ) -> list[TaskInstance]:
        query = "SELECT * FROM task_instances WHERE user_id = ?"
        params: list = [user_id]
        if due_date is not None:
            query += " AND due_date = ?"
            params.append(due_date)
        if template_id is not None:
            query += " AND template_id = ?"
            params.append(template_id)
        query += " ORDER BY due_date, id"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def list_overdue(self, user_id: str) -> list[TaskInstance]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM task_instances WHERE user_id = ? AND is_completed = 0 "
                "AND current_board = ? ORDER BY due_date, id",
                (user_id, OVERDUE_BOARD),
            ).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def list_completed_between(self, user_id: str, start: str, end: str) -> list[TaskInstance]:
        """Instances completed with a due date in [start, end]."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM task_instances WHERE user_id = ? AND is_completed = 1 "
                "AND due_date BETWEEN ? AND ? ORDER BY due_date, id",
                (user_id, start, end),
            ).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def find_pending_instance(self, template_id: int) -> TaskInstance | None:
        """The oldest incomplete instance of a template, if any."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE template_id = ? AND is_completed = 0 "
                "ORDER BY due_date LIMIT 1",
                (template_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_instance(row)

    def get_instance_for_cycle(self, template_id: int, cycle_key: str) -> TaskInstance | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE template_id = ? AND cycle_key = ?",
                (template_id, cycle_key),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_instance(row)

    def insert_instance_if_absent(
        self, template: RecurrenceTemplate, due_date: str, cycle_key: str,
    ) -> TaskInstance | None:
        """Insert the instance for (template, cycle) unless one already exists.

        Returns the new instance, or None when the unique constraint on
        (template_id, cycle_key) rejected the row.
        """
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO task_instances
                    (user_id, template_id, title, description, due_date, cycle_key,
                     current_board, is_priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (template_id, cycle_key) DO NOTHING
                """,
                (
                    template.user_id, template.id, template.title, template.description,
                    due_date, cycle_key, template.origin_board, int(template.is_priority),
                    _utc_now_iso(),
                ),
            )
            if cursor.rowcount == 0:
                return None
            instance_id = cursor.lastrowid

        return TaskInstance(
            id=instance_id,
            user_id=template.user_id,
            template_id=template.id,
            title=template.title,
            description=template.description,
            due_date=due_date,
            cycle_key=cycle_key,
            current_board=template.origin_board,
            is_priority=template.is_priority,
        )

    def set_instance_completed(
        self,
        instance_id: int,
        completed: bool,
        completed_at: str | None,
        on_template: Callable[[HabitMetrics, TaskInstance], HabitMetrics] | None = None,
    ) -> TaskInstance:
        """Flip an instance's done flag and, in the same transaction,
        update its template's metrics through *on_template*.

        Setting the flag to its current value is a no-op.
        """
        with self._connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE id = ?", (instance_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Task instance {instance_id} not found")
            instance = self._row_to_instance(row)
            if instance.is_completed == completed:
                return instance

            instance.is_completed = completed
            instance.completed_at = completed_at if completed else None
            conn.execute(
                "UPDATE task_instances SET is_completed = ?, completed_at = ? WHERE id = ?",
                (int(completed), instance.completed_at, instance_id),
            )

            if instance.template_id is not None and on_template is not None:
                trow = conn.execute(
                    "SELECT * FROM recurrence_templates WHERE id = ?", (instance.template_id,)
                ).fetchone()
                if trow is not None:
                    metrics = on_template(self._row_to_metrics(trow), instance)
                    self._write_metrics(conn, instance.template_id, metrics)
                    self._write_history(conn, instance.template_id, instance.due_date, completed)

        logger.info(
            "Instance #%d marked %s", instance_id, "done" if completed else "not done",
        )
        return instance

    # -- habit history -----------------------------------------------------

    @staticmethod
    def _write_history(
        conn: sqlite3.Connection, template_id: int, cycle_date: str, completed: bool,
    ) -> None:
        conn.execute(
            """
            INSERT INTO habit_history (template_id, cycle_date, completed, recorded_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (template_id, cycle_date) DO UPDATE SET
                completed = excluded.completed,
                recorded_at = excluded.recorded_at
            """,
            (template_id, cycle_date, int(completed), _utc_now_iso()),
        )
        conn.execute(
            "UPDATE recurrence_templates SET alert = ? WHERE id = ?",
            (int(not completed), template_id),
        )

    def record_history(self, template_id: int, cycle_date: str, completed: bool) -> None:
        """Store the outcome of one cycle; a miss raises the template's alert flag."""
        with self._connection() as conn:
            self._write_history(conn, template_id, cycle_date, completed)

    def list_history(self, template_id: int) -> list[HabitHistoryEntry]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM habit_history WHERE template_id = ? ORDER BY cycle_date",
                (template_id,),
            ).fetchall()
        return [
            HabitHistoryEntry(
                template_id=r["template_id"],
                cycle_date=r["cycle_date"],
                completed=bool(r["completed"]),
                recorded_at=r["recorded_at"],
            )
            for r in rows
        ]

    def move_overdue(self, user_id: str, before_date: str, moved_at: str) -> int:
        """Move incomplete instances due before *before_date* to the overdue board."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE task_instances
                   SET overdue = 1, current_board = ?, last_moved_to_overdue_at = ?
                 WHERE user_id = ? AND is_completed = 0 AND due_date < ?
                   AND current_board != ?
                """,
                (OVERDUE_BOARD, moved_at, user_id, before_date, OVERDUE_BOARD),
            )
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


class NoteDB(_SQLiteStore):
    """Notes with optional reminders."""

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id       TEXT    NOT NULL,
                title         TEXT    NOT NULL,
                content       TEXT    NOT NULL DEFAULT '',
                reminder_date TEXT,
                reminder_time TEXT,
                archived      INTEGER NOT NULL DEFAULT 0,
                trashed       INTEGER NOT NULL DEFAULT 0
            )
        """)
        logger.debug("Notes table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            content=row["content"],
            reminder_date=row["reminder_date"],
            reminder_time=row["reminder_time"],
            archived=bool(row["archived"]),
            trashed=bool(row["trashed"]),
        )

    def add_note(
        self,
        user_id: str,
        title: str,
        content: str = "",
        reminder_date: str | None = None,
        reminder_time: str | None = None,
    ) -> Note:
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT INTO notes (user_id, title, content, reminder_date, reminder_time) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, title, content, reminder_date, reminder_time),
            )
            note_id = cursor.lastrowid
        return Note(
            id=note_id,
            user_id=user_id,
            title=title,
            content=content,
            reminder_date=reminder_date,
            reminder_time=reminder_time,
        )

    def set_archived(self, note_id: int, archived: bool = True) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE notes SET archived = ? WHERE id = ?", (int(archived), note_id),
            )
        return cursor.rowcount > 0

    def list_notes_with_reminders(self, user_id: str, reminder_date: str) -> list[Note]:
        """Live notes with a reminder set for *reminder_date*."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notes
                 WHERE user_id = ? AND reminder_date = ? AND reminder_time IS NOT NULL
                   AND archived = 0 AND trashed = 0
                 ORDER BY reminder_time, id
                """,
                (user_id, reminder_date),
            ).fetchall()
        return [self._row_to_note(r) for r in rows]


# ---------------------------------------------------------------------------
# Notification settings and push subscriptions
# ---------------------------------------------------------------------------


class SettingsDB(_SQLiteStore):
    """Per-user notification settings and their push subscriptions."""

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_notification_settings (
                user_id            TEXT PRIMARY KEY,
                timezone           TEXT,
                telegram_enabled   INTEGER NOT NULL DEFAULT 0,
                telegram_bot_token TEXT,
                telegram_chat_id   TEXT,
                webpush_enabled    INTEGER NOT NULL DEFAULT 0,
                morning_brief_time TEXT,
                evening_brief_time TEXT,
                weekly_brief_day   INTEGER,
                weekly_brief_time  TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS push_subscriptions (
                id                INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id           TEXT NOT NULL,
                endpoint          TEXT NOT NULL UNIQUE,
                subscription_json TEXT NOT NULL
            )
        """)
        logger.debug("Settings tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_settings(row: sqlite3.Row) -> UserNotificationSettings:
        return UserNotificationSettings(
            user_id=row["user_id"],
            timezone=row["timezone"],
            telegram_enabled=bool(row["telegram_enabled"]),
            telegram_bot_token=row["telegram_bot_token"],
            telegram_chat_id=row["telegram_chat_id"],
            webpush_enabled=bool(row["webpush_enabled"]),
            morning_brief_time=row["morning_brief_time"],
            evening_brief_time=row["evening_brief_time"],
            weekly_brief_day=row["weekly_brief_day"],
            weekly_brief_time=row["weekly_brief_time"],
        )

    def save_settings(self, prefs: UserNotificationSettings) -> UserNotificationSettings:
        """Insert or replace a user's settings row."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO user_notification_settings
                    (user_id, timezone, telegram_enabled, telegram_bot_token, telegram_chat_id,
                     webpush_enabled, morning_brief_time, evening_brief_time,
                     weekly_brief_day, weekly_brief_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    timezone = excluded.timezone,
                    telegram_enabled = excluded.telegram_enabled,
                    telegram_bot_token = excluded.telegram_bot_token,
                    telegram_chat_id = excluded.telegram_chat_id,
                    webpush_enabled = excluded.webpush_enabled,
                    morning_brief_time = excluded.morning_brief_time,
                    evening_brief_time = excluded.evening_brief_time,
                    weekly_brief_day = excluded.weekly_brief_day,
                    weekly_brief_time = excluded.weekly_brief_time
                """,
                (
                    prefs.user_id, prefs.timezone, int(prefs.telegram_enabled),
                    prefs.telegram_bot_token, prefs.telegram_chat_id, int(prefs.webpush_enabled),
                    prefs.morning_brief_time, prefs.evening_brief_time,
                    prefs.weekly_brief_day, prefs.weekly_brief_time,
                ),
            )
        logger.info("Notification settings saved for user %s", prefs.user_id)
        return prefs

    def get_settings(self, user_id: str) -> UserNotificationSettings | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM user_notification_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_settings(row)

    def list_settings(self) -> list[UserNotificationSettings]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM user_notification_settings ORDER BY user_id"
            ).fetchall()
        return [self._row_to_settings(r) for r in rows]

    def add_subscription(self, user_id: str, subscription: dict) -> PushSubscription:
        """Store a browser subscription; re-subscribing the same endpoint replaces it."""
        endpoint = subscription.get("endpoint")
        if not endpoint:
            raise ValueError("Push subscription has no endpoint")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO push_subscriptions (user_id, endpoint, subscription_json)
                VALUES (?, ?, ?)
                ON CONFLICT (endpoint) DO UPDATE SET
                    user_id = excluded.user_id,
                    subscription_json = excluded.subscription_json
                """,
                (user_id, endpoint, json.dumps(subscription)),
            )
            row = conn.execute(
                "SELECT id FROM push_subscriptions WHERE endpoint = ?", (endpoint,)
            ).fetchone()
        return PushSubscription(
            id=row["id"], user_id=user_id, endpoint=endpoint, subscription=subscription,
        )

    def list_subscriptions(self, user_id: str) -> list[PushSubscription]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM push_subscriptions WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [
            PushSubscription(
                id=r["id"],
                user_id=r["user_id"],
                endpoint=r["endpoint"],
                subscription=json.loads(r["subscription_json"]),
            )
            for r in rows
        ]

    def delete_subscription(self, subscription_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM push_subscriptions WHERE id = ?", (subscription_id,),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Push subscription #%d deleted", subscription_id)
        return deleted


# ---------------------------------------------------------------------------
# Send log
# ---------------------------------------------------------------------------


class SendLogDB(_SQLiteStore):
    """One row per (user, kind, subject, cycle) that was notified."""

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS notification_send_log (
                user_id    TEXT NOT NULL,
                kind       TEXT NOT NULL,
                subject_id TEXT NOT NULL DEFAULT '',
                cycle_key  TEXT NOT NULL,
                sent_at    TEXT NOT NULL,
                UNIQUE (user_id, kind, subject_id, cycle_key)
            )
        """)
        logger.debug("Send log initialized at %s", self._db_path)

    def claim(self, record: SendRecord) -> bool:
        """Record a send. False if this occurrence was already recorded."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notification_send_log (user_id, kind, subject_id, cycle_key, sent_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, kind, subject_id, cycle_key) DO NOTHING
                """,
                (
                    record.user_id, record.kind.value, record.subject_id, record.cycle_key,
                    record.sent_at or _utc_now_iso(),
                ),
            )
        return cursor.rowcount == 1

    def was_sent(
        self, user_id: str, kind: NotificationKind, cycle_key: str, subject_id: str = "",
    ) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM notification_send_log "
                "WHERE user_id = ? AND kind = ? AND subject_id = ? AND cycle_key = ?",
                (user_id, kind.value, subject_id, cycle_key),
            ).fetchone()
        return row is not None

    def count(self, user_id: str, kind: NotificationKind | None = None) -> int:
        query = "SELECT COUNT(*) FROM notification_send_log WHERE user_id = ?"
        params: list = [user_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        with self._connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def list_records(self, user_id: str) -> list[SendRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM notification_send_log WHERE user_id = ? ORDER BY sent_at",
                (user_id,),
            ).fetchall()
        return [
            SendRecord(
                user_id=r["user_id"],
                kind=NotificationKind(r["kind"]),
                cycle_key=r["cycle_key"],
                subject_id=r["subject_id"],
                sent_at=r["sent_at"],
            )
            for r in rows
        ]
