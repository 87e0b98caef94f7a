"""
Redis-backed persistence for email jobs, batches and the dead-letter queue.

Key layout:
    email:job:{id}                   job record (JSON)
    email:batch:{id}                 batch record (JSON)
    email:batch:{id}:jobs            ordered job ids (list)
    email:session:{sessionId}:batches batch ids for a session (list)
    email:user:{userId}:active       active batch ids for a user (set, 24h)
    email:dlq                        dead-letter entries, newest first (list)

Job status changes are read-modify-write under WATCH so that concurrent
handlers cannot lose each other's updates. Batch counters are always
recomputed from the job records rather than incremented.
"""

import functools
import json

from app.config import Settings
from app.features.email_jobs.domain.errors import JobNotFoundError, JobStoreUnavailableError
from app.features.email_jobs.domain.models import (
    TERMINAL_BATCH_STATUSES,
    DeadLetterEntry,
    EmailBatch,
    EmailJob,
    EmailJobType,
    JobStatus,
    isoformat,
    utc_now,
)
from app.features.email_jobs.domain.state_machine import (
    JobEvent,
    count_outcomes,
    derive_batch_status,
    transition,
)
from app.infrastructure.observability.logging import get_logger, log_job_transition
from app.services.redis_client import FastRedisClient, RedisUnavailableError

logger = get_logger(__name__)

KEY_PREFIX = "email"
DLQ_KEY = f"{KEY_PREFIX}:dlq"


def job_key(job_id: str) -> str:
    return f"{KEY_PREFIX}:job:{job_id}"


def batch_key(batch_id: str) -> str:
    return f"{KEY_PREFIX}:batch:{batch_id}"


def batch_jobs_key(batch_id: str) -> str:
    return f"{KEY_PREFIX}:batch:{batch_id}:jobs"


def session_batches_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:session:{session_id}:batches"


def user_active_key(user_id: str) -> str:
    return f"{KEY_PREFIX}:user:{user_id}:active"


def _kv_operation(func):
    """Translate Redis connectivity failures into JobStoreUnavailableError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisUnavailableError as e:
            logger.error("Job store unavailable", operation=func.__name__, error=str(e))
            raise JobStoreUnavailableError(func.__name__) from e

    return wrapper


class JobStore:
    """Job and batch records in Redis."""

    def __init__(self, redis: FastRedisClient, settings: Settings):
        self.redis = redis
        self.retention_s = settings.retention_seconds()
        self.active_ttl_s = settings.active_batch_ttl_seconds()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @_kv_operation
    async def get_job(self, job_id: str) -> EmailJob | None:
        record = await self.redis.get_json(job_key(job_id))
        return EmailJob.from_record(record) if record else None

    @_kv_operation
    async def get_jobs(self, job_ids: list[str]) -> list[EmailJob]:
        """Jobs in the given order; ids whose record has expired are skipped."""
        records = await self.redis.get_many_json([job_key(j) for j in job_ids])
        return [EmailJob.from_record(r) for r in records if r]

    @_kv_operation
    async def save_job(self, job: EmailJob) -> None:
        await self.redis.set_json(job_key(job.id), job.to_record(), ttl_s=self.retention_s)

    @_kv_operation
    async def apply(self, job_id: str, event: JobEvent, **details) -> EmailJob:
        """
        Atomically apply a state-machine event to a stored job and refresh
        its batch counters.

        Raises:
            JobNotFoundError: the job record does not exist
            InvalidTransitionError: the event is not legal from the current status
        """
        result: dict = {}

        def mutate(record: dict | None) -> dict:
            if record is None:
                raise JobNotFoundError("job", job_id)
            updated = transition(EmailJob.from_record(record), event, **details)
            result["job"] = updated
            return updated.to_record()

        await self.redis.update_json(job_key(job_id), mutate, ttl_s=self.retention_s)
        job = result["job"]

        log_job_transition(
            job_id,
            event.value,
            job.status.value,
            job.attempts,
            error=job.last_error if job.status is JobStatus.FAILED else None,
        )

        if job.batch_id:
            await self.refresh_batch(job.batch_id)
        return job

    @_kv_operation
    async def set_queue_message_id(self, job_id: str, message_id: str) -> None:
        """Record the queue message carrying this job; status is left alone."""

        def mutate(record: dict | None) -> dict | None:
            if record is None:
                return None
            return {**record, "queueMessageId": message_id}

        await self.redis.update_json(job_key(job_id), mutate, ttl_s=self.retention_s)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    @_kv_operation
    async def create_batch(
        self,
        *,
        batch_id: str,
        session_id: str | None,
        session_name: str,
        job_type: EmailJobType,
        jobs: list[EmailJob],
        created_by: str | None = None,
    ) -> EmailBatch:
        """Persist jobs, the batch record and its index entries."""
        now = isoformat(utc_now())

        for job in jobs:
            await self.redis.set_json(job_key(job.id), job.to_record(), ttl_s=self.retention_s)
        if jobs:
            await self.redis.push_to_list(
                batch_jobs_key(batch_id), *[j.id for j in jobs], ttl_s=self.retention_s
            )

        counts = count_outcomes(j.status for j in jobs)
        batch = EmailBatch(
            batch_id=batch_id,
            session_id=session_id,
            session_name=session_name,
            type=job_type,
            total=counts["total"],
            completed=counts["completed"],
            failed=counts["failed"],
            cancelled=counts["cancelled"],
            status=derive_batch_status(j.status for j in jobs),
            created_by=created_by,
            created_at=now,
            updated_at=now,
            jobs=[j.id for j in jobs],
        )
        await self.redis.set_json(batch_key(batch_id), batch.to_record(), ttl_s=self.retention_s)

        if session_id:
            await self.redis.push_to_list(
                session_batches_key(session_id), batch_id, ttl_s=self.retention_s
            )
        if created_by:
            await self.redis.add_to_set(
                user_active_key(created_by), batch_id, ttl_s=self.active_ttl_s
            )

        logger.info(
            "Email batch created",
            batch_id=batch_id,
            session_id=session_id,
            type=job_type.value,
            job_count=len(jobs),
        )
        return batch

    @_kv_operation
    async def append_job(self, batch_id: str, job: EmailJob) -> EmailBatch | None:
        """Add a job to an existing batch (total grows by one)."""
        await self.redis.set_json(job_key(job.id), job.to_record(), ttl_s=self.retention_s)
        await self.redis.push_to_list(batch_jobs_key(batch_id), job.id, ttl_s=self.retention_s)
        return await self.refresh_batch(batch_id)

    @_kv_operation
    async def refresh_batch(self, batch_id: str) -> EmailBatch | None:
        """Recompute counters and status from the batch's job records."""
        state: dict = {}

        async def mutate(record: dict | None) -> dict | None:
            if record is None:
                return None
            job_ids = await self.redis.list_range(batch_jobs_key(batch_id))
            jobs = await self.get_jobs(job_ids)
            counts = count_outcomes(j.status for j in jobs)

            batch = EmailBatch.from_record(record, job_ids)
            # Expired job records still count toward the total
            batch.total = len(job_ids)
            batch.completed = counts["completed"]
            batch.failed = counts["failed"]
            batch.cancelled = counts["cancelled"]
            batch.status = derive_batch_status(j.status for j in jobs)
            batch.updated_at = isoformat(utc_now())
            state["batch"] = batch
            return batch.to_record()

        await self.redis.update_json(batch_key(batch_id), mutate, ttl_s=self.retention_s)
        batch = state.get("batch")
        if batch is None:
            return None

        if batch.status in TERMINAL_BATCH_STATUSES and batch.created_by:
            await self.redis.remove_from_set(user_active_key(batch.created_by), batch_id)
        return batch

    @_kv_operation
    async def get_batch(self, batch_id: str) -> EmailBatch | None:
        record = await self.redis.get_json(batch_key(batch_id))
        if record is None:
            return None
        job_ids = await self.redis.list_range(batch_jobs_key(batch_id))
        return EmailBatch.from_record(record, job_ids)

    @_kv_operation
    async def get_batch_jobs(self, batch_id: str) -> list[EmailJob]:
        job_ids = await self.redis.list_range(batch_jobs_key(batch_id))
        return await self.get_jobs(job_ids)

    @_kv_operation
    async def get_session_batch_ids(self, session_id: str) -> list[str]:
        return await self.redis.list_range(session_batches_key(session_id))

    @_kv_operation
    async def get_session_jobs(self, session_id: str) -> list[EmailJob]:
        jobs: list[EmailJob] = []
        for batch_id in await self.get_session_batch_ids(session_id):
            jobs.extend(await self.get_batch_jobs(batch_id))
        return jobs

    @_kv_operation
    async def get_user_active_batch_ids(self, user_id: str) -> list[str]:
        return sorted(await self.redis.set_members(user_active_key(user_id)))

    @_kv_operation
    async def scan_batch_ids(self) -> list[str]:
        prefix = f"{KEY_PREFIX}:batch:"
        keys = await self.redis.scan_keys(f"{prefix}*")
        return [k[len(prefix) :] for k in keys if not k.endswith(":jobs")]

    @_kv_operation
    async def delete_batch(self, batch_id: str) -> bool:
        """
        Remove a batch, its job records and index entries.

        Returns True if the batch record existed. Safe to call repeatedly.
        """
        record = await self.redis.get_json(batch_key(batch_id))
        job_ids = await self.redis.list_range(batch_jobs_key(batch_id))

        await self.redis.delete(
            *[job_key(j) for j in job_ids], batch_jobs_key(batch_id), batch_key(batch_id)
        )

        if record:
            if record.get("sessionId"):
                await self.redis.remove_from_list(
                    session_batches_key(record["sessionId"]), batch_id
                )
            if record.get("createdBy"):
                await self.redis.remove_from_set(user_active_key(record["createdBy"]), batch_id)

        logger.info(
            "Email batch deleted", batch_id=batch_id, existed=record is not None, job_count=len(job_ids)
        )
        return record is not None

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    @_kv_operation
    async def add_dead_letter(self, job: EmailJob, reason: str) -> DeadLetterEntry:
        entry = DeadLetterEntry(job=job, reason=reason, added_at=isoformat(utc_now()))
        await self.redis.prepend_to_list(
            DLQ_KEY, json.dumps(entry.to_record()), ttl_s=self.retention_s
        )
        logger.warning(
            "Job moved to dead-letter queue",
            job_id=job.id,
            batch_id=job.batch_id,
            attempts=job.attempts,
            reason=reason,
        )
        return entry

    @_kv_operation
    async def get_dead_letters(self, limit: int) -> list[DeadLetterEntry]:
        if limit <= 0:
            return []
        raw_entries = await self.redis.list_range(DLQ_KEY, 0, limit - 1)
        return [DeadLetterEntry.from_record(json.loads(raw)) for raw in raw_entries]
