"""
Scheduling endpoints.

    POST /schedule                 schedule one, several or all sessions
    POST /schedule/session-update  notify participants about a changed session
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import admin_dependency
from app.dependencies import get_scheduler, get_session_repository
from app.features.email_jobs.domain.errors import JobStoreUnavailableError
from app.features.email_jobs.repository.session_repository import SessionRepository
from app.features.email_jobs.services.scheduler import JobScheduler, ScheduleResult
from app.infrastructure.observability.logging import get_logger
from app.models.api.email_jobs_request import ScheduleRequest, SessionUpdateRequest
from app.models.api.email_jobs_response import (
    ScheduleResponse,
    ScheduleSessionResponse,
    ScheduleSummary,
)
from app.services.baseql_client import SessionSourceError

logger = get_logger(__name__)

router = APIRouter(prefix="/schedule", tags=["email-scheduling"], dependencies=[Depends(admin_dependency)])

DISABLED_MESSAGE = "Email scheduling is disabled: QSTASH_TOKEN is not configured"


def _summarize(results: list[ScheduleResult]) -> ScheduleSummary:
    return ScheduleSummary(
        sessions=len(results),
        scheduled=sum(1 for r in results if r.success and r.job_count and not r.skipped),
        skipped=sum(1 for r in results if r.skipped),
        failed=sum(1 for r in results if not r.success),
        job_count=sum(r.job_count for r in results),
    )


@router.post("", response_model=ScheduleResponse)
async def schedule_sessions(
    request: ScheduleRequest,
    scheduler: JobScheduler = Depends(get_scheduler),
    sessions: SessionRepository = Depends(get_session_repository),
):
    """Create and enqueue the reminder and feedback emails for sessions."""
    if not scheduler.queue.configured:
        logger.warning("Schedule request ignored, queue not configured")
        return ScheduleResponse(success=True, disabled=True, dry_run=request.dry_run, message=DISABLED_MESSAGE)

    try:
        if request.all:
            now = scheduler.clock()
            targets = [s for s in await sessions.list_sessions() if s.end_time and s.end_time > now]
            missing: list[str] = []
        else:
            ids = [request.session_id] if request.session_id else list(dict.fromkeys(request.session_ids))
            targets, missing = [], []
            for session_id in ids:
                session = await sessions.get_session(session_id)
                if session is None:
                    missing.append(session_id)
                else:
                    targets.append(session)
    except SessionSourceError as e:
        logger.error("Could not load sessions for scheduling", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Could not load sessions: {e}"
        ) from e

    results = [ScheduleResult(session_id=m, success=False, error="Session not found") for m in missing]
    try:
        for session in targets:
            results.append(
                await scheduler.schedule_session(
                    session,
                    force=request.force,
                    created_by=request.created_by,
                    dry_run=request.dry_run,
                )
            )
    except JobStoreUnavailableError as e:
        logger.error("Job store unavailable during scheduling", operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store temporarily unavailable"
        ) from e

    summary = _summarize(results)
    logger.info(
        "Schedule request handled",
        dry_run=request.dry_run,
        force=request.force,
        **summary.model_dump(),
    )
    return ScheduleResponse(
        success=summary.failed == 0,
        dry_run=request.dry_run,
        results=[ScheduleSessionResponse.from_result(r) for r in results],
        summary=summary,
    )


@router.post("/session-update", response_model=ScheduleSessionResponse)
async def schedule_session_update(
    request: SessionUpdateRequest,
    scheduler: JobScheduler = Depends(get_scheduler),
    sessions: SessionRepository = Depends(get_session_repository),
):
    """Send a 'session updated' email to the selected participants."""
    try:
        session = await sessions.get_session(request.session_id)
    except SessionSourceError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Could not load session: {e}"
        ) from e
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {request.session_id} not found"
        )

    try:
        result = await scheduler.schedule_session_update(
            session, request.recipient_ids, request.changes, created_by=request.created_by
        )
    except JobStoreUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store temporarily unavailable"
        ) from e

    return ScheduleSessionResponse.from_result(result)
