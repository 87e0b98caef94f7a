"""
Orphaned job sweep.

Marks jobs that never reached the worker (their delivery time passed more
than ORPHANED_JOB_GRACE_MINUTES ago and they are still pending/scheduled) as
failed so they show up for retry.
"""

from app.config import settings
from app.features.email_jobs.container import email_job_services
from app.features.email_jobs.services.scheduler import JobScheduler
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def reconcile_orphaned_jobs(scheduler: JobScheduler, grace_minutes: int | None = None) -> dict:
    summary = await scheduler.reconcile_orphaned_jobs(grace_minutes)
    if summary["failed"]:
        logger.warning("Orphaned jobs marked failed", **summary)
    return {"success": True, **summary}


async def run_reconcile_job() -> dict:
    async with email_job_services(settings) as services:
        return await reconcile_orphaned_jobs(services.scheduler)
