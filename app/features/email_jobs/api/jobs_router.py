"""
Email job status and operator actions.

    GET    /jobs?batchId=|sessionId=|userId=|active=true|dlq=true
    GET    /jobs/preview?type=&format=html|json
    DELETE /jobs?batchId=|sessionId=
    POST   /jobs/{jobId}/cancel | retry | resend
    POST   /jobs/retry-failed
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from app.auth.verify import admin_dependency
from app.config import Settings
from app.dependencies import get_settings, get_status_service
from app.features.email_jobs.domain.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreUnavailableError,
    LiveJobConflictError,
)
from app.features.email_jobs.domain.models import EmailJobType, JobStatus
from app.features.email_jobs.services.job_status_service import DEFAULT_DLQ_LIMIT, JobStatusService
from app.features.email_jobs.services.templates import TemplateError, render_preview
from app.infrastructure.observability.logging import get_logger
from app.models.api.email_jobs_request import RetryFailedRequest
from app.models.api.email_jobs_response import (
    DeadLetterResponse,
    JobActionResponse,
    JobResponse,
    JobsQueryResponse,
    MessageResponse,
    PreviewResponse,
    ProgressResponse,
    RetryFailedResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["email-jobs"], dependencies=[Depends(admin_dependency)])

QUERY_HINT = "Use sessionId, batchId, active=true, userId, or dlq=true"


def _unavailable(e: JobStoreUnavailableError) -> HTTPException:
    logger.error("Job store unavailable", operation=e.operation)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Job store temporarily unavailable",
    )


@router.get("", response_model=JobsQueryResponse, response_model_exclude_none=True)
async def get_jobs(
    batch_id: str | None = Query(None, alias="batchId", description="Progress of one batch"),
    session_id: str | None = Query(None, alias="sessionId", description="Batches of one session"),
    user_id: str | None = Query(None, alias="userId", description="Active batches created by a user"),
    active: bool = Query(default=False, description="Every active batch"),
    dlq: bool = Query(default=False, description="Dead-letter queue entries"),
    details: bool = Query(default=False, description="Include job records"),
    limit: int = Query(default=DEFAULT_DLQ_LIMIT, ge=1, le=1000, description="Dead-letter entries to return"),
    service: JobStatusService = Depends(get_status_service),
):
    """Batch progress, batch lists or the dead-letter queue."""
    try:
        if dlq:
            entries = await service.get_dead_letter_queue(limit)
            return JobsQueryResponse(
                dead_letter_queue=[DeadLetterResponse.from_entry(e) for e in entries],
                count=len(entries),
            )

        if batch_id:
            progress = (
                await service.get_job_progress_with_details(batch_id)
                if details
                else await service.get_job_progress(batch_id)
            )
            if progress is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch {batch_id} not found")
            return JobsQueryResponse(progress=ProgressResponse.from_progress(progress))

        if session_id:
            batches = await service.get_session_batches(session_id, details)
        elif user_id:
            batches = await service.get_user_active_batches(user_id, details)
        elif active:
            batches = await service.get_all_active_batches(details)
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Missing query parameter", "hint": QUERY_HINT},
            )

        return JobsQueryResponse(
            batches=[ProgressResponse.from_progress(p) for p in batches],
            count=len(batches),
        )

    except JobStoreUnavailableError as e:
        raise _unavailable(e) from e


@router.get("/preview", response_model=PreviewResponse)
async def preview_template(
    job_type: EmailJobType = Query(..., alias="type", description="Email type to render"),
    output_format: str = Query(default="html", alias="format", pattern="^(html|json)$", description="html or json"),
    settings: Settings = Depends(get_settings),
):
    """Render an email template with sample data."""
    try:
        rendered, sample = render_preview(job_type, settings.app_url())
    except TemplateError as e:
        logger.error("Template preview failed", type=job_type.value, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to render {job_type.value}: {e}",
        ) from e

    if output_format == "html":
        return HTMLResponse(content=rendered.html)
    return PreviewResponse(type=job_type.value, subject=rendered.subject, sample_data=sample, html=rendered.html)


@router.delete("", response_model=MessageResponse, response_model_exclude_none=True)
async def delete_jobs(
    batch_id: str | None = Query(None, alias="batchId", description="Batch to delete"),
    session_id: str | None = Query(None, alias="sessionId", description="Session whose pending jobs to cancel"),
    service: JobStatusService = Depends(get_status_service),
):
    """
    Delete a batch with its jobs (deleting a missing batch succeeds), or
    cancel every pending/scheduled job of a session.
    """
    if bool(batch_id) == bool(session_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Provide exactly one of batchId or sessionId",
                "hint": "DELETE /jobs?batchId=<id> or DELETE /jobs?sessionId=<id>",
            },
        )
    try:
        if session_id:
            cancelled = await service.cancel_session_jobs(session_id)
            return MessageResponse(
                success=True,
                message=f"Cancelled {cancelled} job(s) for session {session_id}",
                cancelled=cancelled,
            )
        existed = await service.delete_batch(batch_id)
    except JobStoreUnavailableError as e:
        raise _unavailable(e) from e

    message = f"Batch {batch_id} deleted" if existed else f"Batch {batch_id} not found, nothing to delete"
    return MessageResponse(success=True, message=message)


@router.post("/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(
    request: RetryFailedRequest,
    service: JobStatusService = Depends(get_status_service),
):
    """Re-queue every failed job of a batch or a session."""
    try:
        summary = await service.retry_all_failed(batch_id=request.batch_id, session_id=request.session_id)
    except JobStoreUnavailableError as e:
        raise _unavailable(e) from e

    return RetryFailedResponse(success=summary["failed"] == 0, **summary)


async def _job_action(action: str, job_id: str, operation) -> JobActionResponse:
    try:
        job = await operation(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except LiveJobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot {action} job {job_id}: status is '{e.status}'",
        ) from e
    except JobStoreUnavailableError as e:
        raise _unavailable(e) from e

    if job.status is JobStatus.FAILED:
        logger.warning(f"Job {action} could not be queued", job_id=job.id, error=job.last_error)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Job {job.id} could not be queued: {job.last_error}",
        )

    return JobActionResponse(success=True, message=f"Job {action} succeeded", job=JobResponse.from_job(job))


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(job_id: str, service: JobStatusService = Depends(get_status_service)):
    """Cancel a pending or scheduled job."""
    return await _job_action("cancel", job_id, service.cancel_job)


@router.post("/{job_id}/retry", response_model=JobActionResponse)
async def retry_job(job_id: str, service: JobStatusService = Depends(get_status_service)):
    """Re-queue a failed or cancelled job for immediate delivery."""
    return await _job_action("retry", job_id, service.retry_job)


@router.post("/{job_id}/resend", response_model=JobActionResponse)
async def resend_job(job_id: str, service: JobStatusService = Depends(get_status_service)):
    """Deliver a completed email again as a new job."""
    return await _job_action("resend", job_id, service.resend_job)
