"""
Email job scheduler.

Turns notification payloads into EmailJob/EmailBatch records and hands each
batch to QStash as one delayed message. Jobs are written as `scheduled`
before the hand-off so they are visible even if QStash rejects the message;
a rejected hand-off marks that batch's jobs `failed` (retriable) and
`reconcile_orphaned_jobs` catches anything that slipped through.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from app.config import Settings
from app.features.email_jobs.domain.errors import InvalidTransitionError, JobNotFoundError
from app.features.email_jobs.domain.models import (
    EmailJob,
    EmailJobType,
    JobStatus,
    isoformat,
    parse_timestamp,
    utc_now,
)
from app.features.email_jobs.domain.payloads import (
    BatchDelivery,
    DeliveryRecipient,
    NotificationPayload,
)
from app.features.email_jobs.domain.snapshots import SessionSnapshot
from app.features.email_jobs.domain.state_machine import JobEvent, transition
from app.features.email_jobs.domain.timefmt import delay_seconds
from app.features.email_jobs.repository.job_store import JobStore
from app.features.email_jobs.services.payload_builder import (
    build_session_update_notifications,
    plan_session_notifications,
)
from app.infrastructure.observability.logging import get_logger
from app.services.qstash_client import QStashClient, QueueClientError, QueueMessage

logger = get_logger(__name__)

CANCELLABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.SCHEDULED})


@dataclass(slots=True)
class ScheduleResult:
    session_id: str | None
    success: bool = True
    job_count: int = 0
    batch_ids: list[str] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str | None = None
    error: str | None = None
    cancelled_count: int = 0
    failed_count: int = 0
    duplicate_count: int = 0
    disabled: bool = False


@dataclass(slots=True)
class _JobGroup:
    session_id: str | None
    session_name: str
    type: EmailJobType
    scheduled_for: datetime
    payloads: list[NotificationPayload] = field(default_factory=list)


class JobScheduler:
    def __init__(
        self,
        store: JobStore,
        queue: QStashClient,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ):
        self.store = store
        self.queue = queue
        self.settings = settings
        self.clock = clock
        self.id_factory = id_factory

    # ------------------------------------------------------------------
    # Queue message helpers
    # ------------------------------------------------------------------

    def _message(self, body: dict, deliver_at: datetime) -> QueueMessage:
        base = self.settings.app_url()
        return QueueMessage(
            destination=f"{base}/qstash/worker",
            body=body,
            delay_seconds=delay_seconds(deliver_at, self.clock()),
            callback=f"{base}/qstash/callback",
            failure_callback=f"{base}/qstash/failure",
        )

    @staticmethod
    def _group_payloads(payloads: list[NotificationPayload]) -> list[_JobGroup]:
        """One group per (session, type); keeps first-seen order."""
        groups: dict[tuple, _JobGroup] = {}
        for payload in payloads:
            key = (payload.session_id, payload.type)
            group = groups.get(key)
            if group is None:
                group = groups[key] = _JobGroup(
                    session_id=payload.session_id,
                    session_name=payload.session_name,
                    type=payload.type,
                    scheduled_for=payload.scheduled_for,
                )
            group.scheduled_for = min(group.scheduled_for, payload.scheduled_for)
            group.payloads.append(payload)
        return list(groups.values())

    def _build_jobs(self, group: _JobGroup, batch_id: str) -> list[EmailJob]:
        now = self.clock()
        timestamp = isoformat(now)
        jobs = []
        for payload in group.payloads:
            job = EmailJob(
                id=self.id_factory(),
                batch_id=batch_id,
                session_id=payload.session_id,
                type=payload.type,
                recipient_email=payload.recipient_email,
                recipient_name=payload.recipient_name,
                scheduled_for=isoformat(group.scheduled_for),
                role=payload.role,
                metadata=dict(payload.metadata),
                created_at=timestamp,
                updated_at=timestamp,
            )
            jobs.append(transition(job, JobEvent.QUEUE, now=now))
        return jobs

    @staticmethod
    def _batch_body(group: _JobGroup, batch_id: str, jobs: list[EmailJob]) -> dict:
        shared = dict(jobs[0].metadata) if jobs else {}
        recipients = [
            DeliveryRecipient(
                job_id=job.id,
                to=job.recipient_email,
                recipient_name=job.recipient_name,
                role=job.role,
                metadata=job.metadata if job.metadata != shared else None,
            )
            for job in jobs
        ]
        return BatchDelivery(
            batch_id=batch_id,
            session_id=group.session_id,
            type=group.type,
            scheduled_for=isoformat(group.scheduled_for),
            recipients=recipients,
            metadata=shared,
        ).to_record()

    async def _fail_jobs(self, jobs: list[EmailJob], error: str) -> int:
        failed = 0
        for job in jobs:
            try:
                await self.store.apply(job.id, JobEvent.FAIL, error=error)
                failed += 1
            except (InvalidTransitionError, JobNotFoundError) as e:
                logger.warning("Could not mark job failed after hand-off error", job_id=job.id, error=str(e))
        return failed

    async def _schedule_payloads(
        self,
        payloads: list[NotificationPayload],
        result: ScheduleResult,
        created_by: str | None = None,
    ) -> ScheduleResult:
        groups = self._group_payloads(payloads)
        batches: list[tuple[_JobGroup, str, list[EmailJob]]] = []

        for group in groups:
            batch_id = self.id_factory()
            jobs = self._build_jobs(group, batch_id)
            await self.store.create_batch(
                batch_id=batch_id,
                session_id=group.session_id,
                session_name=group.session_name,
                job_type=group.type,
                jobs=jobs,
                created_by=created_by,
            )
            batches.append((group, batch_id, jobs))
            result.batch_ids.append(batch_id)
            result.job_count += len(jobs)

        messages = [
            self._message(self._batch_body(group, batch_id, jobs), group.scheduled_for)
            for group, batch_id, jobs in batches
        ]

        try:
            publish_results = await self.queue.publish_batch(messages)
        except QueueClientError as e:
            logger.error(
                "Queue hand-off failed",
                session_id=result.session_id,
                batch_count=len(batches),
                error=str(e),
            )
            for _, _, jobs in batches:
                result.failed_count += await self._fail_jobs(jobs, f"Queue hand-off failed: {e}")
            result.success = False
            result.error = str(e)
            return result

        for (group, batch_id, jobs), publish in zip(batches, publish_results):
            if publish.ok:
                for job in jobs:
                    await self.store.set_queue_message_id(job.id, publish.message_id)
                logger.info(
                    "Batch handed to queue",
                    batch_id=batch_id,
                    type=group.type.value,
                    job_count=len(jobs),
                    message_id=publish.message_id,
                    scheduled_for=isoformat(group.scheduled_for),
                )
            else:
                logger.error("Queue rejected batch", batch_id=batch_id, error=publish.error)
                result.failed_count += await self._fail_jobs(jobs, f"Queue hand-off failed: {publish.error}")

        if result.failed_count:
            result.success = False
            result.error = f"{result.failed_count} job(s) could not be handed to the queue"
        return result

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def schedule_session(
        self,
        session: SessionSnapshot,
        *,
        force: bool = False,
        created_by: str | None = None,
        dry_run: bool = False,
    ) -> ScheduleResult:
        """Create and enqueue every future email for one session."""
        result = ScheduleResult(session_id=session.id)
        now = self.clock()

        if session.scheduled_start is None:
            return self._skip(result, "Session has no scheduled start")
        if session.end_time <= now:
            return self._skip(result, "Session has already ended")
        if not self.queue.configured:
            result.success, result.disabled = False, True
            result.error = "Email scheduling is disabled (queue not configured)"
            return result

        live_jobs = [j for j in await self.store.get_session_jobs(session.id) if j.is_live]
        if live_jobs and not force:
            return self._skip(result, f"Session already has {len(live_jobs)} scheduled email(s)")

        payloads = plan_session_notifications(session, now, self.settings.MAX_SCHEDULE_DAYS)
        if dry_run:
            result.job_count = len(payloads)
            return result

        if force and live_jobs:
            result.cancelled_count = await self.cancel_session_jobs(session.id)

        if not payloads:
            return self._skip(result, "No notifications fall inside the scheduling window")

        result = await self._schedule_payloads(payloads, result, created_by=created_by)
        logger.info(
            "Session emails scheduled",
            session_id=session.id,
            job_count=result.job_count,
            batch_count=len(result.batch_ids),
            cancelled=result.cancelled_count,
            force=force,
        )
        return result

    async def schedule_notifications(
        self, payloads: list[NotificationPayload], created_by: str | None = None
    ) -> ScheduleResult:
        """
        Enqueue already-due payloads (daily run) for immediate delivery.

        Recipients that already have a live or completed job of the same type
        for the session are skipped.
        """
        result = ScheduleResult(session_id=None)
        if not payloads:
            return result
        if not self.queue.configured:
            result.success, result.disabled = False, True
            result.error = "Email scheduling is disabled (queue not configured)"
            return result

        existing: dict[str, set[tuple[EmailJobType, str]]] = {}
        fresh = []
        for payload in payloads:
            if payload.session_id is not None:
                if payload.session_id not in existing:
                    jobs = await self.store.get_session_jobs(payload.session_id)
                    existing[payload.session_id] = {
                        (j.type, j.recipient_email.lower())
                        for j in jobs
                        if j.is_live or j.status is JobStatus.COMPLETED
                    }
                if (payload.type, payload.recipient_email.lower()) in existing[payload.session_id]:
                    result.duplicate_count += 1
                    continue
            fresh.append(payload)

        if not fresh:
            return self._skip(result, "All due notifications were already sent or scheduled")
        return await self._schedule_payloads(fresh, result, created_by=created_by)

    async def schedule_session_update(
        self,
        session: SessionSnapshot,
        recipient_contact_ids: list[str],
        changes: dict,
        created_by: str | None = None,
    ) -> ScheduleResult:
        """Send a 'session updated' email to the selected participants now."""
        result = ScheduleResult(session_id=session.id)
        if not self.queue.configured:
            result.success, result.disabled = False, True
            result.error = "Email scheduling is disabled (queue not configured)"
            return result

        payloads = build_session_update_notifications(
            session, recipient_contact_ids, changes, self.clock()
        )
        if not payloads:
            return self._skip(result, "No matching recipients with an email address")
        return await self._schedule_payloads(payloads, result, created_by=created_by)

    async def schedule_single_job(self, job: EmailJob) -> str:
        """
        Enqueue one job as a single-recipient batch message.

        Past-due jobs are delivered immediately. Returns the queue message id.

        Raises:
            QueueClientError: if the queue rejects the message
        """
        deliver_at = parse_timestamp(job.scheduled_for) or self.clock()
        body = BatchDelivery(
            batch_id=job.batch_id or job.id,
            session_id=job.session_id,
            type=job.type,
            scheduled_for=job.scheduled_for,
            recipients=[
                DeliveryRecipient(
                    job_id=job.id, to=job.recipient_email, recipient_name=job.recipient_name, role=job.role
                )
            ],
            metadata=job.metadata,
        ).to_record()
        message_id = await self.queue.publish(self._message(body, deliver_at))
        await self.store.set_queue_message_id(job.id, message_id)
        return message_id

    async def release_queue_message(self, job: EmailJob) -> bool:
        """
        Delete the queue message that carries `job` once none of the jobs it
        carries is still live. Returns True if QStash dropped the message.

        A failed delete is logged and ignored; the worker skips cancelled
        jobs when the message arrives anyway.
        """
        message_id = job.queue_message_id
        if not message_id:
            return False
        siblings = await self.store.get_batch_jobs(job.batch_id) if job.batch_id else []
        if any(j.is_live and j.queue_message_id == message_id for j in siblings):
            return False

        try:
            deleted = await self.queue.cancel(message_id)
        except QueueClientError as e:
            logger.warning("Queue message cancel failed", job_id=job.id, message_id=message_id, error=str(e))
            return False
        logger.info("Queue message released", job_id=job.id, message_id=message_id, deleted=deleted)
        return deleted

    async def cancel_session_jobs(self, session_id: str) -> int:
        """
        Cancel every pending/scheduled job of a session and delete the queue
        messages left with nothing to deliver.

        Jobs the worker has already claimed are left alone, and so is the
        message carrying them.
        """
        cancelled: list[EmailJob] = []
        for job in await self.store.get_session_jobs(session_id):
            if job.status not in CANCELLABLE_STATUSES:
                continue
            try:
                cancelled.append(await self.store.apply(job.id, JobEvent.CANCEL))
            except (InvalidTransitionError, JobNotFoundError) as e:
                logger.info("Job changed before it could be cancelled", job_id=job.id, error=str(e))

        released: set[str] = set()
        for job in cancelled:
            if job.queue_message_id and job.queue_message_id not in released:
                released.add(job.queue_message_id)
                await self.release_queue_message(job)

        logger.info(
            "Session jobs cancelled",
            session_id=session_id,
            cancelled=len(cancelled),
            messages=len(released),
        )
        return len(cancelled)

    async def reconcile_orphaned_jobs(self, grace_minutes: int | None = None) -> dict:
        """
        Fail pending/scheduled jobs whose delivery time passed more than the
        grace period ago without the worker ever picking them up.
        """
        grace = timedelta(
            minutes=self.settings.ORPHANED_JOB_GRACE_MINUTES if grace_minutes is None else grace_minutes
        )
        cutoff = self.clock() - grace
        checked = failed = 0

        for batch_id in await self.store.scan_batch_ids():
            for job in await self.store.get_batch_jobs(batch_id):
                if job.status not in CANCELLABLE_STATUSES:
                    continue
                checked += 1
                due = parse_timestamp(job.scheduled_for)
                if due is None or due > cutoff:
                    continue
                try:
                    await self.store.apply(
                        job.id,
                        JobEvent.FAIL,
                        error=f"Delivery not confirmed within {int(grace.total_seconds() // 60)} minutes of schedule",
                    )
                    failed += 1
                except (InvalidTransitionError, JobNotFoundError) as e:
                    logger.info("Orphan candidate changed during sweep", job_id=job.id, error=str(e))

        logger.info("Orphaned job sweep finished", checked=checked, failed=failed)
        return {"checked": checked, "failed": failed}

    @staticmethod
    def _skip(result: ScheduleResult, reason: str) -> ScheduleResult:
        result.skipped = True
        result.skip_reason = reason
        logger.info("Scheduling skipped", session_id=result.session_id, reason=reason)
        return result
