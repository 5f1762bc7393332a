"""Background job scheduler module using APScheduler."""

from schema_compat.scheduler.scheduler import create_scheduler, get_scheduler, register_jobs

__all__ = ["create_scheduler", "get_scheduler", "register_jobs"]
