"""APScheduler job definitions for the tracking and matching dispatcher."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pricesync.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner = task_runner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Tracking runs every settings.tracking_interval_minutes; each store is
      only tracked when its plan frequency allows another pass
    - The matching queue is drained every settings.matching_queue_interval_minutes

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    tracking_interval = max(1, int(runner.config.tracking_interval_minutes))
    matching_interval = max(1, int(runner.config.matching_queue_interval_minutes))

    scheduler.add_job(
        runner.run_tracking,
        IntervalTrigger(minutes=tracking_interval),
        id="competitor_tracking",
        name="Refresh competitor prices",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.process_matching_queue,
        IntervalTrigger(minutes=matching_interval),
        id="matching_queue",
        name="Process queued matching batches",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: tracking every %d minutes, matching queue every %d minutes",
        tracking_interval,
        matching_interval,
    )

    return scheduler
