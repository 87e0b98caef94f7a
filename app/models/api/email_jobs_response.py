"""
Email jobs API response models.
Built from the domain dataclasses; serialized as camelCase.
"""

from typing import Any

from pydantic import Field

from app.features.email_jobs.domain.models import DeadLetterEntry, EmailJob, JobProgress
from app.features.email_jobs.services.scheduler import ScheduleResult
from app.models.api.email_jobs_request import CamelModel


class JobResponse(CamelModel):
    id: str = Field(..., description="Job ID")
    batch_id: str | None = Field(None, description="Owning batch")
    session_id: str | None = Field(None, description="Session the email is about")
    type: str = Field(..., description="Email type")
    recipient_email: str = Field(..., description="True recipient address")
    recipient_name: str = Field(..., description="Recipient display name")
    scheduled_for: str = Field(..., description="Delivery time (ISO-8601 UTC)")
    status: str = Field(..., description="pending, scheduled, processing, completed, failed or cancelled")
    attempts: int = Field(..., description="Number of queue hand-offs")
    role: str | None = Field(None, description="student or mentor")
    last_error: str | None = Field(None, description="Most recent failure")
    resend_email_id: str | None = Field(None, description="Mail provider message id")
    queue_message_id: str | None = Field(None, description="Queue message carrying the job")
    resend_of: str | None = Field(None, description="Original job when this is a resend")
    created_at: str = Field(default="", description="Creation time")
    updated_at: str = Field(default="", description="Last status change")

    @classmethod
    def from_job(cls, job: EmailJob) -> "JobResponse":
        return cls(
            id=job.id,
            batch_id=job.batch_id,
            session_id=job.session_id,
            type=job.type.value,
            recipient_email=job.recipient_email,
            recipient_name=job.recipient_name,
            scheduled_for=job.scheduled_for,
            status=job.status.value,
            attempts=job.attempts,
            role=job.role.value if job.role else None,
            last_error=job.last_error,
            resend_email_id=job.resend_email_id,
            queue_message_id=job.queue_message_id,
            resend_of=job.resend_of,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class ProgressResponse(CamelModel):
    batch_id: str = Field(..., description="Batch ID")
    session_id: str | None = Field(None, description="Session ID")
    session_name: str = Field(..., description="Session display name")
    type: str = Field(..., description="Email type of every job in the batch")
    total_jobs: int = Field(..., description="Jobs in the batch")
    completed_jobs: int = Field(..., description="Delivered jobs")
    failed_jobs: int = Field(..., description="Failed jobs")
    cancelled_jobs: int = Field(..., description="Cancelled jobs")
    pending_jobs: int = Field(..., description="Jobs not yet finished")
    progress_percent: int = Field(..., description="Finished jobs as a percentage of the total")
    status: str = Field(..., description="Derived batch status")
    created_at: str = Field(default="", description="Creation time")
    updated_at: str = Field(default="", description="Last counter refresh")
    jobs: list[JobResponse] | None = Field(None, description="Jobs, when details were requested")

    @classmethod
    def from_progress(cls, progress: JobProgress) -> "ProgressResponse":
        finished = progress.completed + progress.failed + progress.cancelled
        return cls(
            batch_id=progress.batch_id,
            session_id=progress.session_id,
            session_name=progress.session_name,
            type=progress.type.value,
            total_jobs=progress.total,
            completed_jobs=progress.completed,
            failed_jobs=progress.failed,
            cancelled_jobs=progress.cancelled,
            pending_jobs=max(progress.total - finished, 0),
            progress_percent=round(100 * finished / progress.total) if progress.total else 0,
            status=progress.status.value,
            created_at=progress.created_at,
            updated_at=progress.updated_at,
            jobs=[JobResponse.from_job(j) for j in progress.jobs] if progress.jobs is not None else None,
        )


class DeadLetterResponse(CamelModel):
    job: JobResponse = Field(..., description="Job as it was when dead-lettered")
    reason: str = Field(..., description="Final failure")
    added_at: str = Field(..., description="When the entry was added")
    reviewed: bool = Field(default=False, description="Whether an operator reviewed it")

    @classmethod
    def from_entry(cls, entry: DeadLetterEntry) -> "DeadLetterResponse":
        return cls(
            job=JobResponse.from_job(entry.job),
            reason=entry.reason,
            added_at=entry.added_at,
            reviewed=entry.reviewed,
        )


class JobsQueryResponse(CamelModel):
    success: bool = Field(default=True)
    progress: ProgressResponse | None = Field(None, description="Single batch progress")
    batches: list[ProgressResponse] | None = Field(None, description="Batch progress list")
    dead_letter_queue: list[DeadLetterResponse] | None = Field(None, description="Dead-letter entries")
    count: int | None = Field(None, description="Number of batches or entries returned")


class JobActionResponse(CamelModel):
    success: bool = Field(..., description="Whether the action took effect")
    message: str = Field(..., description="Human-readable outcome")
    job: JobResponse | None = Field(None, description="Job after the action")


class MessageResponse(CamelModel):
    success: bool = Field(..., description="Whether the call succeeded")
    message: str = Field(..., description="Human-readable outcome")
    cancelled: int | None = Field(None, description="Jobs cancelled (session cancel only)")


class PreviewResponse(CamelModel):
    type: str = Field(..., description="Email type rendered")
    subject: str = Field(..., description="Subject line, before delivery overrides")
    sample_data: dict[str, Any] = Field(..., description="Template data used for the preview")
    html: str = Field(..., description="Rendered HTML body")


class RetryFailedResponse(CamelModel):
    success: bool = Field(..., description="True when every failed job was re-queued")
    retried: int = Field(..., description="Jobs re-queued")
    failed: int = Field(..., description="Jobs that could not be re-queued")
    total: int = Field(..., description="Failed jobs found")


class ScheduleSessionResponse(CamelModel):
    session_id: str | None = Field(None, description="Session ID")
    success: bool = Field(..., description="Whether scheduling succeeded")
    job_count: int = Field(default=0, description="Jobs created (or that would be, on a dry run)")
    batch_ids: list[str] = Field(default_factory=list, description="Batches created")
    skipped: bool = Field(default=False, description="Whether the session was skipped")
    skip_reason: str | None = Field(None, description="Why it was skipped")
    cancelled_count: int = Field(default=0, description="Live jobs cancelled by force")
    error: str | None = Field(None, description="Failure detail")

    @classmethod
    def from_result(cls, result: ScheduleResult) -> "ScheduleSessionResponse":
        return cls(
            session_id=result.session_id,
            success=result.success,
            job_count=result.job_count,
            batch_ids=result.batch_ids,
            skipped=result.skipped,
            skip_reason=result.skip_reason,
            cancelled_count=result.cancelled_count,
            error=result.error,
        )


class ScheduleSummary(CamelModel):
    sessions: int = Field(..., description="Sessions processed")
    scheduled: int = Field(..., description="Sessions with jobs created")
    skipped: int = Field(..., description="Sessions skipped")
    failed: int = Field(..., description="Sessions that failed")
    job_count: int = Field(..., description="Jobs created across all sessions")


class ScheduleResponse(CamelModel):
    success: bool = Field(..., description="False if any session failed")
    disabled: bool = Field(default=False, description="True when the queue is not configured")
    dry_run: bool = Field(default=False, description="Echo of the dryRun flag")
    message: str | None = Field(None, description="Explanation when disabled")
    results: list[ScheduleSessionResponse] = Field(default_factory=list)
    summary: ScheduleSummary | None = Field(None)


class CronResponse(CamelModel):
    success: bool = Field(..., description="Whether the run succeeded")
    result: dict[str, Any] = Field(default_factory=dict, description="Run summary")
