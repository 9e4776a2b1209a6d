"""Tests for taskpulse.jobs.runner — wiring and the minute trigger."""

from unittest.mock import AsyncMock, MagicMock, patch

from taskpulse.core.scheduler import NotificationScheduler, TickReport
from taskpulse.jobs.runner import _setup_minute_tick, build_scheduler, main


def test_build_scheduler_wires_stores(tmp_db_path):
    scheduler = build_scheduler(tmp_db_path)
    assert isinstance(scheduler, NotificationScheduler)


def test_minute_tick_job():
    aps = MagicMock()
    scheduler = MagicMock()
    _setup_minute_tick(aps, scheduler)

    args, kwargs = aps.add_job.call_args
    assert args == (scheduler.run_tick, "cron")
    assert kwargs["minute"] == "*"
    assert kwargs["second"] == 0
    assert kwargs["max_instances"] == 1
    assert kwargs["coalesce"] is True


def test_main_once_runs_single_tick(tmp_db_path):
    scheduler = MagicMock()
    scheduler.run_tick = AsyncMock(return_value=TickReport())
    with patch("taskpulse.jobs.runner.build_scheduler", return_value=scheduler) as build:
        main(["--once", "--db", tmp_db_path])

    build.assert_called_once_with(tmp_db_path)
    scheduler.run_tick.assert_awaited_once()
