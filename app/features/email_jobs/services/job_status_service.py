"""
Job status service.

Read side (batch progress, active batches, dead-letter queue) and the manual
operator actions: cancel, retry, resend and delete.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from app.features.email_jobs.domain.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    LiveJobConflictError,
)
from app.features.email_jobs.domain.models import (
    DeadLetterEntry,
    EmailJob,
    EmailJobType,
    JobProgress,
    JobStatus,
    isoformat,
    utc_now,
)
from app.features.email_jobs.domain.state_machine import JobEvent, new_resend_job, transition
from app.features.email_jobs.repository.job_store import JobStore
from app.features.email_jobs.services.scheduler import JobScheduler
from app.infrastructure.observability.logging import get_logger
from app.services.qstash_client import QueueClientError

logger = get_logger(__name__)

DEFAULT_DLQ_LIMIT = 100


class JobStatusService:
    def __init__(
        self,
        store: JobStore,
        scheduler: JobScheduler,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ):
        self.store = store
        self.scheduler = scheduler
        self.clock = clock
        self.id_factory = id_factory

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def get_job_progress(self, batch_id: str) -> JobProgress | None:
        batch = await self.store.get_batch(batch_id)
        return JobProgress.from_batch(batch) if batch else None

    async def get_job_progress_with_details(self, batch_id: str) -> JobProgress | None:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            return None
        jobs = await self.store.get_jobs(batch.jobs)
        return JobProgress.from_batch(batch, jobs)

    async def _progress_for(self, batch_ids: list[str], details: bool = False) -> list[JobProgress]:
        progress = []
        for batch_id in batch_ids:
            item = (
                await self.get_job_progress_with_details(batch_id)
                if details
                else await self.get_job_progress(batch_id)
            )
            if item is not None:
                progress.append(item)
        return progress

    async def get_session_batches(self, session_id: str, details: bool = False) -> list[JobProgress]:
        batch_ids = await self.store.get_session_batch_ids(session_id)
        return await self._progress_for(batch_ids, details)

    async def get_user_active_batches(self, user_id: str, details: bool = False) -> list[JobProgress]:
        batch_ids = await self.store.get_user_active_batch_ids(user_id)
        return [p for p in await self._progress_for(batch_ids, details) if p.is_active]

    async def get_all_active_batches(self, details: bool = False) -> list[JobProgress]:
        batch_ids = await self.store.scan_batch_ids()
        active = [p for p in await self._progress_for(batch_ids, details) if p.is_active]
        return sorted(active, key=lambda p: p.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_session_jobs(self, session_id: str) -> list[EmailJob]:
        return await self.store.get_session_jobs(session_id)

    async def find_session_jobs(
        self,
        session_id: str,
        job_type: EmailJobType | None = None,
        recipient_email: str | None = None,
    ) -> list[EmailJob]:
        jobs = await self.store.get_session_jobs(session_id)
        if job_type is not None:
            jobs = [j for j in jobs if j.type is job_type]
        if recipient_email:
            wanted = recipient_email.lower()
            jobs = [j for j in jobs if j.recipient_email.lower() == wanted]
        return jobs

    async def _require_job(self, job_id: str) -> EmailJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError("job", job_id)
        return job

    async def _ensure_no_live_duplicate(self, job: EmailJob) -> None:
        """
        Raise LiveJobConflictError if another job for the same session (or
        batch, for jobs without one), type and recipient is still live.
        """
        if job.session_id:
            candidates = await self.find_session_jobs(job.session_id, job.type, job.recipient_email)
        elif job.batch_id:
            wanted = job.recipient_email.lower()
            candidates = [
                j
                for j in await self.store.get_batch_jobs(job.batch_id)
                if j.type is job.type and j.recipient_email.lower() == wanted
            ]
        else:
            return
        for other in candidates:
            if other.id != job.id and other.is_live:
                raise LiveJobConflictError(job.id, other.id, other.status.value)

    async def cancel_job(self, job_id: str) -> EmailJob:
        """
        Cancel a pending or scheduled job and delete its queue message once
        nothing else in that message is still live. A job the worker claimed
        a moment earlier cannot be cancelled and raises InvalidTransitionError.
        """
        await self._require_job(job_id)
        job = await self.store.apply(job_id, JobEvent.CANCEL, now=self.clock())
        released = await self.scheduler.release_queue_message(job)
        logger.info("Job cancelled", job_id=job_id, batch_id=job.batch_id, message_released=released)
        return job

    async def cancel_session_jobs(self, session_id: str) -> int:
        return await self.scheduler.cancel_session_jobs(session_id)

    async def _enqueue_or_fail(self, job: EmailJob) -> EmailJob:
        try:
            message_id = await self.scheduler.schedule_single_job(job)
        except QueueClientError as e:
            logger.error("Re-enqueue failed", job_id=job.id, error=str(e))
            return await self.store.apply(job.id, JobEvent.FAIL, error=f"Queue hand-off failed: {e}")
        job.queue_message_id = message_id
        return job

    async def retry_job(self, job_id: str) -> EmailJob:
        """
        Put a failed (or cancelled) job back on the queue for immediate
        delivery. Returns the job as stored afterwards; it is `failed` again
        if the queue rejected it.

        Raises:
            JobNotFoundError: unknown job
            LiveJobConflictError: a newer job for the same email is still live
            InvalidTransitionError: the job is not failed or cancelled
        """
        await self._ensure_no_live_duplicate(await self._require_job(job_id))
        now = self.clock()
        job = await self.store.apply(job_id, JobEvent.RETRY, now=now, scheduled_for=isoformat(now))
        job = await self._enqueue_or_fail(job)
        logger.info("Job retried", job_id=job_id, attempts=job.attempts, status=job.status.value)
        return job

    async def retry_all_failed(
        self, *, batch_id: str | None = None, session_id: str | None = None
    ) -> dict:
        if bool(batch_id) == bool(session_id):
            raise ValueError("Provide exactly one of batch_id or session_id")

        if batch_id:
            jobs = await self.store.get_batch_jobs(batch_id)
        else:
            jobs = await self.store.get_session_jobs(session_id)

        failed_jobs = [j for j in jobs if j.status is JobStatus.FAILED]
        retried = failed = 0
        for job in failed_jobs:
            try:
                result = await self.retry_job(job.id)
            except (InvalidTransitionError, JobNotFoundError) as e:
                logger.info("Job skipped in bulk retry", job_id=job.id, error=str(e))
                failed += 1
                continue
            if result.status is JobStatus.SCHEDULED:
                retried += 1
            else:
                failed += 1

        logger.info(
            "Bulk retry finished",
            batch_id=batch_id,
            session_id=session_id,
            retried=retried,
            failed=failed,
        )
        return {"retried": retried, "failed": failed, "total": len(failed_jobs)}

    async def resend_job(self, job_id: str) -> EmailJob:
        """
        Deliver a completed email again as a new job in the same batch.

        Raises:
            JobNotFoundError: unknown job
            InvalidTransitionError: the job is not completed
            LiveJobConflictError: an earlier resend of it is still live
        """
        original = await self._require_job(job_id)
        now = self.clock()
        copy = new_resend_job(original, self.id_factory(), scheduled_for=isoformat(now), now=now)
        await self._ensure_no_live_duplicate(original)
        job = transition(copy, JobEvent.QUEUE, now=now)

        if job.batch_id:
            await self.store.append_job(job.batch_id, job)
        else:
            await self.store.save_job(job)

        job = await self._enqueue_or_fail(job)
        logger.info("Job resent", job_id=job.id, resend_of=job_id, status=job.status.value)
        return job

    async def delete_batch(self, batch_id: str) -> bool:
        return await self.store.delete_batch(batch_id)

    async def get_dead_letter_queue(self, limit: int = DEFAULT_DLQ_LIMIT) -> list[DeadLetterEntry]:
        return await self.store.get_dead_letters(limit)
