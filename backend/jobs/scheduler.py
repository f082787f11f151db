"""APScheduler setup for background maintenance of the job registry."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


@asynccontextmanager
async def track_job_run(job_id: str):
    """Log start/completion/failure of a scheduled run with a correlation id.

    Usage:
        async with track_job_run("sweep_jobs") as run_id:
            # Do work...
    """
    run_id = str(uuid.uuid4())
    logger.info(f"[{run_id[:8]}] Starting {job_id}")
    try:
        yield run_id
    except Exception as e:
        logger.error(f"[{run_id[:8]}] Failed {job_id}: {e}")
        raise
    logger.info(f"[{run_id[:8]}] Completed {job_id}")


async def sweep_jobs_job():
    """Job: Remove export jobs past their TTL or flagged stopped."""
    async with track_job_run("sweep_jobs"):
        from services.job_registry import job_registry

        removed = job_registry.sweep_expired()
        logger.info(f"Job sweep: {removed} removed, {len(job_registry)} retained")


async def start_scheduler():
    """Initialize and start the scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        sweep_jobs_job,
        IntervalTrigger(minutes=settings.job_sweep_interval_minutes),
        id="sweep_jobs",
        name="Remove expired export jobs",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Scheduler started: sweeping jobs every {settings.job_sweep_interval_minutes} minutes "
        f"(TTL {settings.job_ttl_hours}h)"
    )


async def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")
