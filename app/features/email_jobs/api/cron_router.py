"""
Cron entry points, called by the platform scheduler with
`Authorization: Bearer <CRON_SECRET>`.

    POST /cron/daily-notifications
    POST /cron/reconcile
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import cron_dependency
from app.dependencies import get_scheduler, get_session_repository
from app.features.email_jobs.domain.errors import JobStoreUnavailableError
from app.features.email_jobs.jobs.daily_notifications_job import DailyNotificationsJob
from app.features.email_jobs.jobs.reconcile_job import reconcile_orphaned_jobs
from app.features.email_jobs.repository.session_repository import SessionRepository
from app.features.email_jobs.services.scheduler import JobScheduler
from app.infrastructure.observability.logging import get_logger
from app.models.api.email_jobs_response import CronResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(cron_dependency)])


@router.post("/daily-notifications", response_model=CronResponse)
async def daily_notifications(
    scheduler: JobScheduler = Depends(get_scheduler),
    sessions: SessionRepository = Depends(get_session_repository),
):
    """Send every prep, feedback and overdue-task reminder due now."""
    try:
        summary = await DailyNotificationsJob(sessions, scheduler, clock=scheduler.clock).run_once()
    except JobStoreUnavailableError as e:
        logger.error("Job store unavailable during daily notifications", operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store temporarily unavailable"
        ) from e
    return CronResponse(success=bool(summary.get("success")), result=summary)


@router.post("/reconcile", response_model=CronResponse)
async def reconcile(scheduler: JobScheduler = Depends(get_scheduler)):
    """Fail jobs whose delivery time passed without the worker picking them up."""
    try:
        summary = await reconcile_orphaned_jobs(scheduler)
    except JobStoreUnavailableError as e:
        logger.error("Job store unavailable during reconcile", operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store temporarily unavailable"
        ) from e
    return CronResponse(success=True, result=summary)
