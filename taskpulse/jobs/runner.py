"""
TaskPulse — Worker runner.

Wires the SQLite stores and channel adapters into a NotificationScheduler
and triggers it every minute with APScheduler. `--once` runs a single tick
and exits, for deployments where an external cron is the trigger.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from taskpulse.config import settings

logger = logging.getLogger(__name__)


def build_scheduler(db_path: str | None = None):
    """Build a NotificationScheduler over the configured database."""
    from taskpulse.adapters.channel_factory import create_chat_channel, create_push_channel
    from taskpulse.core.dispatcher import Dispatcher
    from taskpulse.core.scheduler import NotificationScheduler
    from taskpulse.data.db import NoteDB, SendLogDB, SettingsDB, TemplateDB

    user_settings = SettingsDB(db_path)
    dispatcher = Dispatcher(create_push_channel(), create_chat_channel(), user_settings)
    return NotificationScheduler(
        templates=TemplateDB(db_path),
        notes=NoteDB(db_path),
        user_settings=user_settings,
        send_log=SendLogDB(db_path),
        dispatcher=dispatcher,
    )


def _setup_minute_tick(aps: AsyncIOScheduler, scheduler) -> None:
    """Register the per-minute notification tick.

    Overlapping ticks are coalesced; the send log keeps a late duplicate
    from sending twice anyway.
    """
    aps.add_job(
        scheduler.run_tick,
        "cron",
        minute="*",
        second=0,
        id="notification_tick",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=30,
    )
    logger.info(
        "Notification tick scheduled every minute (catch-up %s)",
        "on" if settings.SCHEDULER_CATCH_UP else "off",
    )


async def _serve(scheduler) -> None:
    aps = AsyncIOScheduler(timezone="UTC")
    _setup_minute_tick(aps, scheduler)
    aps.start()
    try:
        await asyncio.Event().wait()
    finally:
        aps.shutdown(wait=False)


def main(argv: list[str] | None = None) -> None:
    """Entry point: run one tick or serve forever."""
    parser = argparse.ArgumentParser(description="TaskPulse notification worker")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    parser.add_argument("--db", default=None, help="database path (default: DATABASE_PATH)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    scheduler = build_scheduler(args.db)
    if args.once:
        report = asyncio.run(scheduler.run_tick())
        logger.info("Single tick: %d sent, %d errors", report.sent, report.errors)
        return

    logger.info("Starting TaskPulse worker...")
    try:
        asyncio.run(_serve(scheduler))
    except KeyboardInterrupt:
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
