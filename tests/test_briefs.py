"""Tests for taskpulse.core.briefs — message builders and LLM fallback."""

from datetime import date

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from taskpulse.core.briefs import (
    build_daily_brief,
    build_note_reminder,
    build_task_reminder,
    build_weekly_brief,
    summarize_day,
    summarize_week,
)
from taskpulse.core.streaks import apply_miss, toggle_instance
from taskpulse.data.models import Note, Recurrence

MARCH_1 = date(2024, 3, 1)


class TestSummarizeDay:
    def test_pending_done_and_overdue(self, template_db):
        template_db.add_task("u1", "Write report", "2024-03-01", board="high_priority", is_priority=True)
        done = template_db.add_task("u1", "Walk dog", "2024-03-01")
        template_db.set_instance_completed(done.id, True, "2024-03-01T12:00:00")
        template_db.add_task("u1", "Old bill", "2024-02-20")
        template_db.move_overdue("u1", "2024-03-01", "2024-03-01T03:00:00")

        text = summarize_day(template_db, "u1", MARCH_1)

        assert "Pending today (1):\n  - Write report (!)" in text
        assert "Done today (1):\n  - Walk dog" in text
        assert "Overdue (1):\n  - Old bill" in text

    def test_nothing_pending(self, template_db):
        assert summarize_day(template_db, "u1", MARCH_1) == "Pending today: none"


class TestDailyBrief:
    @pytest.mark.asyncio
    async def test_morning_title_and_link(self, template_db):
        with patch("taskpulse.core.briefs.settings") as mock_settings:
            mock_settings.BRIEF_USE_LLM = False
            mock_settings.APP_BASE_URL = "https://app.example.com/"
            message = await build_daily_brief(template_db, "u1", MARCH_1, "morning")
        assert message.title == "Good morning! Here is your day"
        assert message.url == "https://app.example.com/dashboard"

    @pytest.mark.asyncio
    async def test_evening_title(self, template_db):
        message = await build_daily_brief(template_db, "u1", MARCH_1, "evening")
        assert message.title == "Evening wrap-up"
        assert message.url == "/dashboard"

    @pytest.mark.asyncio
    async def test_llm_polish_used_when_enabled(self, template_db):
        with patch("taskpulse.core.briefs.settings") as mock_settings, \
             patch("taskpulse.core.llm.complete", new=AsyncMock(return_value="  Have a great day!  ")):
            mock_settings.BRIEF_USE_LLM = True
            mock_settings.APP_BASE_URL = ""
            message = await build_daily_brief(template_db, "u1", MARCH_1, "morning")
        assert message.body == "Have a great day!"

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_raw(self, template_db):
        with patch("taskpulse.core.briefs.settings") as mock_settings, \
             patch("taskpulse.core.llm.complete", new=AsyncMock(side_effect=RuntimeError("quota"))):
            mock_settings.BRIEF_USE_LLM = True
            mock_settings.APP_BASE_URL = ""
            message = await build_daily_brief(template_db, "u1", MARCH_1, "morning")
        assert message.body == "Pending today: none"

    @pytest.mark.asyncio
    async def test_llm_not_called_when_disabled(self, template_db):
        llm = AsyncMock(return_value="polished")
        with patch("taskpulse.core.llm.complete", new=llm):
            message = await build_daily_brief(template_db, "u1", MARCH_1, "morning")
        llm.assert_not_awaited()
        assert message.body == "Pending today: none"


class TestWeeklyBrief:
    def test_summary_lines(self, template_db):
        gym = template_db.add_template("u1", "Gym", Recurrence.daily())
        read = template_db.add_template("u1", "Read", Recurrence.daily())
        inst = template_db.insert_instance_if_absent(gym, "2024-02-28", "2024-02-28")
        toggle_instance(template_db, inst.id, True)
        template_db.update_metrics(read.id, lambda m: apply_miss(m, date(2024, 3, 1)))

        text = summarize_week(template_db, "u1", MARCH_1)

        assert "Completed tasks: 1" in text
        assert "Best streaks:\n  - Gym: 1 in a row (100%)" in text
        assert "Most missed day: Friday (1 misses)" in text

    @pytest.mark.asyncio
    async def test_build_weekly_brief(self, template_db):
        message = await build_weekly_brief(template_db, "u1", MARCH_1)
        assert message.title == "Your weekly summary"
        assert "Completed tasks: 0" in message.body


class TestReminders:
    def test_task_reminder_links_instance(self):
        template = MagicMock(id=3, title="Meds")
        instance = MagicMock(id=17)
        message = build_task_reminder(template, instance)
        assert message.title == "Task reminder: Meds"
        assert message.url == "/tasks?complete_task_id=17"

    def test_note_reminder_preview_truncated(self):
        note = Note(id=5, user_id="u1", title="Ideas", content="x" * 300)
        message = build_note_reminder(note)
        assert message.title == "Note reminder: Ideas"
        assert message.body == "x" * 200 + "…"
        assert message.url == "/notes?note_id=5"

    def test_empty_note_gets_default_body(self):
        message = build_note_reminder(Note(id=5, user_id="u1", title="Ideas"))
        assert message.body == "You asked to be reminded about this note."
