"""
APScheduler setup and configuration.

Runs the migration monitoring jobs inside the service process.
"""

from typing import Any, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from schema_compat.core.config import settings
from schema_compat.log.logging import logger
from schema_compat.services import MigrationServices

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def create_scheduler() -> AsyncIOScheduler:
    """Create and configure the APScheduler instance."""
    global _scheduler

    if _scheduler is not None:
        return _scheduler

    job_defaults = {
        "coalesce": True,  # Combine missed runs into one
        "max_instances": 1,  # Prevent overlapping executions
        "misfire_grace_time": 60,
    }

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone=settings.scheduler_timezone,
    )

    logger.info("Scheduler created", event_type="scheduler_created")

    return _scheduler


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


def register_jobs(scheduler: AsyncIOScheduler, services: MigrationServices) -> None:
    """
    Register all scheduled jobs.

    Jobs are only registered if scheduler is enabled in settings.
    """
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled, skipping job registration")
        return

    from schema_compat.scheduler.jobs.monitoring import (
        redrive_side_effects,
        refresh_registry,
        run_health_checks,
        sample_consistency,
    )

    scheduler.add_job(
        refresh_registry,
        "interval",
        seconds=settings.registry_refresh_seconds,
        args=[services],
        id="refresh_registry",
        name="Refresh migration registry",
        replace_existing=True,
    )

    scheduler.add_job(
        sample_consistency,
        "interval",
        seconds=settings.health_sample_interval_seconds,
        args=[services],
        id="sample_consistency",
        name="Sample read path consistency",
        replace_existing=True,
    )

    scheduler.add_job(
        run_health_checks,
        "interval",
        seconds=settings.health_check_interval_seconds,
        args=[services],
        id="run_health_checks",
        name="Migration health checks",
        replace_existing=True,
    )

    scheduler.add_job(
        redrive_side_effects,
        "interval",
        seconds=settings.side_effect_redrive_seconds,
        args=[services],
        id="redrive_side_effects",
        name="Redrive pending side effects",
        replace_existing=True,
    )

    job_count = len(scheduler.get_jobs())
    logger.info(
        "Registered {job_count} scheduled jobs",
        event_type="scheduler_jobs_registered",
        job_count=job_count,
    )


async def start_scheduler(services: MigrationServices) -> None:
    """Start the scheduler if enabled."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled, not starting")
        return

    scheduler = create_scheduler()
    if not scheduler.get_jobs():
        register_jobs(scheduler, services)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started", event_type="scheduler_started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped", event_type="scheduler_stopped")
    _scheduler = None


def get_all_jobs() -> list[dict[str, Any]]:
    """Get information about all scheduled jobs."""
    if _scheduler is None:
        return []

    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in _scheduler.get_jobs()
    ]
