"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pricewatch.config import settings
from pricewatch.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner = task_runner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Price pipeline every settings.pipeline_interval_minutes
    - AI job drain every settings.ai_job_drain_interval_minutes
    - Priority tuning daily at settings.priority_tuning_hour (UTC)

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    pipeline_interval = max(1, settings.pipeline_interval_minutes)
    drain_interval = max(1, settings.ai_job_drain_interval_minutes)

    scheduler.add_job(
        runner.scheduled_pipeline,
        IntervalTrigger(minutes=pipeline_interval),
        id="price_pipeline",
        name="Scrape, match and persist variant prices",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.scheduled_drain,
        IntervalTrigger(minutes=drain_interval),
        id="ai_job_drain",
        name="Process pending AI jobs",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.scheduled_tune_priorities,
        CronTrigger(hour=settings.priority_tuning_hour, minute=0),
        id="priority_tuning",
        name="Tune product scrape priorities",
        max_instances=1,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: pipeline every %d minutes, AI job drain every %d minutes, "
        "priority tuning daily at %02d:00",
        pipeline_interval,
        drain_interval,
        settings.priority_tuning_hour,
    )

    return scheduler
