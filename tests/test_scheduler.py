"""Tests for taskpulse.core.scheduler — per-tick evaluation and send-once."""

import asyncio
import sqlite3
from datetime import date, datetime, timezone

import pytest
from unittest.mock import AsyncMock, patch

from taskpulse.core.dispatcher import Dispatcher
from taskpulse.core.scheduler import (
    NotificationScheduler,
    NotificationState,
    is_due_at,
    send_due_briefs,
    send_due_reminders,
)
from taskpulse.core.streaks import toggle_instance
from taskpulse.data.models import (
    BRIEF_KINDS,
    NotificationKind,
    Recurrence,
    UserNotificationSettings,
)

# America/Sao_Paulo is UTC-3 all year (no DST since 2019).
# 2024-03-01 is a Friday.


def _utc(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


def _telegram_user(user_id: str = "u1", **kwargs) -> UserNotificationSettings:
    return UserNotificationSettings(
        user_id=user_id,
        timezone="America/Sao_Paulo",
        telegram_enabled=True,
        telegram_bot_token=f"token-{user_id}",
        telegram_chat_id=f"chat-{user_id}",
        **kwargs,
    )


@pytest.fixture
def chat():
    return AsyncMock()


def _make_scheduler(template_db, note_db, settings_db, send_log_db, chat, catch_up=True):
    return NotificationScheduler(
        templates=template_db,
        notes=note_db,
        user_settings=settings_db,
        send_log=send_log_db,
        dispatcher=Dispatcher(None, chat, settings_db),
        catch_up=catch_up,
    )


@pytest.fixture
def scheduler(template_db, note_db, settings_db, send_log_db, chat):
    return _make_scheduler(template_db, note_db, settings_db, send_log_db, chat)


def _states(report, kind):
    return [e.state for e in report.evaluations if e.kind is kind]


# ---------------------------------------------------------------------------
# is_due_at
# ---------------------------------------------------------------------------


class TestIsDueAt:
    def test_exact_minute(self):
        now = datetime(2024, 3, 1, 9, 30)
        assert is_due_at("09:30", now, catch_up=False) is True
        assert is_due_at("09:29", now, catch_up=False) is False

    def test_catch_up_until_midnight(self):
        assert is_due_at("09:30", datetime(2024, 3, 1, 23, 59), catch_up=True) is True
        assert is_due_at("09:30", datetime(2024, 3, 1, 9, 29), catch_up=True) is False


# ---------------------------------------------------------------------------
# Briefs
# ---------------------------------------------------------------------------


class TestMorningBrief:
    @pytest.mark.asyncio
    async def test_sent_once_per_day(self, scheduler, settings_db, template_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        template_db.add_template("u1", "Read", Recurrence.daily())

        first = await scheduler.run_tick(_utc(11, 0))
        second = await scheduler.run_tick(_utc(11, 0))

        assert _states(first, NotificationKind.MORNING_BRIEF) == [NotificationState.SENT]
        assert _states(second, NotificationKind.MORNING_BRIEF) == [
            NotificationState.SUPPRESSED_ALREADY_SENT
        ]
        chat.send.assert_awaited_once()
        token, chat_id, text = chat.send.await_args.args
        assert (token, chat_id) == ("token-u1", "chat-u1")
        assert "Read" in text

    @pytest.mark.asyncio
    async def test_concurrent_double_fire_sends_once(self, scheduler, settings_db, send_log_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))

        reports = await asyncio.gather(
            scheduler.run_tick(_utc(11, 0)), scheduler.run_tick(_utc(11, 0)),
        )

        assert sum(r.sent for r in reports) == 1
        assert chat.send.await_count == 1
        assert send_log_db.count("u1", NotificationKind.MORNING_BRIEF) == 1

    @pytest.mark.asyncio
    async def test_before_schedule_is_idle(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        report = await scheduler.run_tick(_utc(10, 59))
        assert _states(report, NotificationKind.MORNING_BRIEF) == [NotificationState.IDLE]
        chat.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_catch_up_after_missed_tick(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        report = await scheduler.run_tick(_utc(11, 40))
        assert report.sent == 1

    @pytest.mark.asyncio
    async def test_exact_mode_misses_late_tick(
        self, template_db, note_db, settings_db, send_log_db, chat,
    ):
        exact = _make_scheduler(template_db, note_db, settings_db, send_log_db, chat, catch_up=False)
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        report = await exact.run_tick(_utc(11, 1))
        assert report.sent == 0
        chat.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_next_day_sends_again(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        await scheduler.run_tick(_utc(11, 0, day=1))
        await scheduler.run_tick(_utc(11, 0, day=2))
        assert chat.send.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_build_is_retried_next_tick(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))

        with patch(
            "taskpulse.core.briefs.build_daily_brief",
            new=AsyncMock(side_effect=RuntimeError("boom")),
        ):
            failed = await scheduler.run_tick(_utc(11, 0))
        assert failed.errors == 1
        chat.send.assert_not_awaited()

        retried = await scheduler.run_tick(_utc(11, 1))
        assert retried.sent == 1


class TestWeeklyBrief:
    @pytest.mark.asyncio
    async def test_sent_on_configured_weekday(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(weekly_brief_day=4, weekly_brief_time="18:00"))

        report = await scheduler.run_tick(_utc(21, 0))

        (evaluation,) = [e for e in report.evaluations if e.kind is NotificationKind.WEEKLY_BRIEF]
        assert evaluation.state is NotificationState.SENT
        assert evaluation.cycle_key == "2024-W09"
        assert "Your weekly summary" in chat.send.await_args.args[2]

    @pytest.mark.asyncio
    async def test_other_weekday_idle(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(weekly_brief_day=0, weekly_brief_time="18:00"))
        report = await scheduler.run_tick(_utc(21, 0))
        assert _states(report, NotificationKind.WEEKLY_BRIEF) == [NotificationState.IDLE]
        chat.send.assert_not_awaited()


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class TestTaskReminder:
    @pytest.mark.asyncio
    async def test_sent_at_0930_suppressed_at_0931(self, scheduler, settings_db, template_db, chat):
        settings_db.save_settings(_telegram_user())
        t = template_db.add_template("u1", "Meds", Recurrence.daily(), reminder_time="09:30")

        before = await scheduler.run_tick(_utc(12, 29))
        at = await scheduler.run_tick(_utc(12, 30))
        after = await scheduler.run_tick(_utc(12, 31))

        assert _states(before, NotificationKind.TASK_REMINDER) == [NotificationState.IDLE]
        assert _states(at, NotificationKind.TASK_REMINDER) == [NotificationState.SENT]
        assert _states(after, NotificationKind.TASK_REMINDER) == [
            NotificationState.SUPPRESSED_ALREADY_SENT
        ]
        chat.send.assert_awaited_once()
        text = chat.send.await_args.args[2]
        assert "Task reminder: Meds" in text
        (evaluation,) = [e for e in at.evaluations if e.kind is NotificationKind.TASK_REMINDER]
        assert evaluation.subject_id == str(t.id)

    @pytest.mark.asyncio
    async def test_completed_task_not_reminded(self, scheduler, settings_db, template_db, chat):
        settings_db.save_settings(_telegram_user())
        template_db.add_template("u1", "Meds", Recurrence.daily(), reminder_time="09:30")

        await scheduler.run_tick(_utc(12, 0))    # instantiates today's task
        (instance,) = template_db.list_instances("u1", due_date="2024-03-01")
        toggle_instance(template_db, instance.id, True)

        report = await scheduler.run_tick(_utc(12, 30))
        assert _states(report, NotificationKind.TASK_REMINDER) == []
        chat.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_due_weekday_not_reminded(self, scheduler, settings_db, template_db, chat):
        settings_db.save_settings(_telegram_user())
        template_db.add_template("u1", "Gym", Recurrence.weekly({0}), reminder_time="09:30")
        report = await scheduler.run_tick(_utc(12, 30))
        assert _states(report, NotificationKind.TASK_REMINDER) == []


class TestNoteReminder:
    @pytest.mark.asyncio
    async def test_note_reminder_sent_once(self, scheduler, settings_db, note_db, chat):
        settings_db.save_settings(_telegram_user())
        note = note_db.add_note(
            "u1", "Pay rent", content="Transfer to landlord",
            reminder_date="2024-03-01", reminder_time="10:00",
        )

        first = await scheduler.run_tick(_utc(13, 0))
        second = await scheduler.run_tick(_utc(13, 5))

        (evaluation,) = [e for e in first.evaluations if e.kind is NotificationKind.NOTE_REMINDER]
        assert evaluation.state is NotificationState.SENT
        assert evaluation.subject_id == str(note.id)
        assert _states(second, NotificationKind.NOTE_REMINDER) == [
            NotificationState.SUPPRESSED_ALREADY_SENT
        ]
        assert "Transfer to landlord" in chat.send.await_args.args[2]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    @pytest.mark.asyncio
    async def test_user_without_channels_still_instantiated(self, scheduler, template_db, chat):
        template_db.add_template("u9", "Read", Recurrence.daily())

        report = await scheduler.run_tick(_utc(12, 0))

        assert report.users == 1
        assert report.evaluations == []
        assert len(template_db.list_instances("u9", due_date="2024-03-01")) == 1
        chat.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_date_used_for_instantiation(self, scheduler, template_db):
        template_db.add_template("u9", "Read", Recurrence.daily())
        # 02:00 UTC on March 2nd is still March 1st in Sao Paulo
        await scheduler.run_tick(_utc(2, 0, day=2))
        assert [i.due_date for i in template_db.list_instances("u9")] == ["2024-03-01"]

    @pytest.mark.asyncio
    async def test_yesterday_missed_recorded(self, scheduler, template_db):
        t = template_db.add_template("u9", "Read", Recurrence.daily())
        await scheduler.run_tick(_utc(12, 0, day=1))
        await scheduler.run_tick(_utc(12, 0, day=2))

        metrics = template_db.get_template(t.id).metrics
        assert metrics.missed_days == ["2024-03-01"]
        assert metrics.streak == 0
        assert len(template_db.list_overdue("u9")) == 1

    @pytest.mark.asyncio
    async def test_failure_isolated_per_user(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user("bad", morning_brief_time="08:00"))
        settings_db.save_settings(_telegram_user("good", morning_brief_time="08:00"))

        from taskpulse.core import briefs
        real_build = briefs.build_daily_brief

        async def _build(store, user_id, local_date, time_of_day):
            if user_id == "bad":
                raise RuntimeError("broken brief")
            return await real_build(store, user_id, local_date, time_of_day)

        with patch("taskpulse.core.briefs.build_daily_brief", new=_build):
            report = await scheduler.run_tick(_utc(11, 0))

        assert report.errors == 1
        assert report.sent == 1
        chat.send.assert_awaited_once()
        assert chat.send.await_args.args[1] == "chat-good"

    @pytest.mark.asyncio
    async def test_malformed_template_row_does_not_block_user(
        self, scheduler, settings_db, template_db, tmp_db_path, chat,
    ):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        template_db.add_template("u1", "Read", Recurrence.daily())
        with sqlite3.connect(tmp_db_path) as conn:
            conn.execute(
                "INSERT INTO recurrence_templates "
                "(user_id, title, recurrence_type, recurrence_details, created_at) "
                "VALUES ('u1', 'Broken', 'weekly', 'Funday', 'x')"
            )

        report = await scheduler.run_tick(_utc(11, 0))

        assert report.sent == 1
        assert [i.title for i in template_db.list_instances("u1", due_date="2024-03-01")] == ["Read"]
        chat.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_maintenance_step_still_notifies(self, scheduler, settings_db, chat):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))

        with patch(
            "taskpulse.core.scheduler.instantiate_due_templates",
            side_effect=RuntimeError("boom"),
        ):
            report = await scheduler.run_tick(_utc(11, 0))

        assert report.errors == 1
        assert report.sent == 1
        chat.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_enabled_without_subscriptions_is_not_claimed(
        self, template_db, note_db, settings_db, send_log_db, chat,
    ):
        push = AsyncMock()
        scheduler = NotificationScheduler(
            templates=template_db,
            notes=note_db,
            user_settings=settings_db,
            send_log=send_log_db,
            dispatcher=Dispatcher(push, chat, settings_db),
            catch_up=True,
        )
        settings_db.save_settings(UserNotificationSettings(
            user_id="u1", timezone="America/Sao_Paulo",
            webpush_enabled=True, morning_brief_time="08:00",
        ))
        template_db.add_template("u1", "Read", Recurrence.daily())

        report = await scheduler.run_tick(_utc(11, 0))

        assert report.evaluations == []
        assert send_log_db.count("u1") == 0
        assert len(template_db.list_instances("u1", due_date="2024-03-01")) == 1
        push.send.assert_not_awaited()


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


class TestEntryPoints:
    @pytest.mark.asyncio
    async def test_send_due_briefs_only_briefs(self, scheduler, settings_db, template_db):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        template_db.add_template("u1", "Meds", Recurrence.daily(), reminder_time="09:00")

        report = await send_due_briefs(scheduler, _utc(12, 30))

        assert {e.kind for e in report.evaluations} <= set(BRIEF_KINDS)
        assert report.sent == 1

    @pytest.mark.asyncio
    async def test_send_due_reminders_only_reminders(self, scheduler, settings_db, template_db):
        settings_db.save_settings(_telegram_user(morning_brief_time="08:00"))
        template_db.add_template("u1", "Meds", Recurrence.daily(), reminder_time="09:00")

        report = await send_due_reminders(scheduler, _utc(12, 30))

        assert {e.kind for e in report.evaluations} == {NotificationKind.TASK_REMINDER}
        assert report.sent == 1
