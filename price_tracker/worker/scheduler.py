"""APScheduler job definitions for running the queue cadence in-process."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from price_tracker.config import settings
from price_tracker.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: Optional[TaskRunner] = None) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    The jobs call the same TaskRunner as the cron endpoints, so running
    both at once is safe; ``max_instances=1`` only avoids piling up
    overlapping runs inside this process.

    Returns:
        Configured scheduler instance
    """
    runner = runner or task_runner
    scheduler = AsyncIOScheduler(timezone="UTC")

    populate_interval = max(1, settings.populate_interval_minutes)
    process_interval = max(1, settings.process_interval_minutes)
    alerts_interval = max(1, settings.alerts_interval_minutes)

    scheduler.add_job(
        runner.populate,
        IntervalTrigger(minutes=populate_interval),
        id="queue_populate",
        name="Queue due listings",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.process_queue,
        IntervalTrigger(minutes=process_interval),
        kwargs={"processor_id": "scheduler"},
        id="queue_process",
        name="Process scrape queue batch",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.process_alerts,
        IntervalTrigger(minutes=alerts_interval),
        id="process_alerts",
        name="Evaluate watchlist price targets",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    # Daily cleanup
    scheduler.add_job(
        runner.cleanup,
        CronTrigger(hour=settings.cleanup_hour_utc, minute=0, timezone="UTC"),
        kwargs={"action": "all"},
        id="cleanup",
        name="Expire leases and prune old rows",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: populate every %d minutes, process queue every %d minutes, "
        "alerts every %d minutes, cleanup daily at %02d:00 UTC",
        populate_interval,
        process_interval,
        alerts_interval,
        settings.cleanup_hour_utc,
    )

    return scheduler
