"""
Email job state machine.

Every job status change goes through `transition`, which returns an updated
copy of the job or raises InvalidTransitionError. Batch status is derived
from the per-job statuses and never stored independently of them.

    pending -> scheduled -> processing -> completed
                                       \\-> failed
    pending|scheduled -> cancelled
    failed|cancelled -> scheduled       (retry)
    completed -> new job                (resend)
"""

import dataclasses
from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from .errors import InvalidTransitionError
from .models import BatchStatus, EmailJob, JobStatus, isoformat, utc_now


class JobEvent(str, Enum):
    QUEUE = "queue"
    START = "start"
    SUCCEED = "succeed"
    FAIL = "fail"
    CANCEL = "cancel"
    RETRY = "retry"


TRANSITIONS: dict[JobEvent, tuple[frozenset[JobStatus], JobStatus]] = {
    JobEvent.QUEUE: (frozenset({JobStatus.PENDING}), JobStatus.SCHEDULED),
    JobEvent.START: (frozenset({JobStatus.SCHEDULED}), JobStatus.PROCESSING),
    JobEvent.SUCCEED: (frozenset({JobStatus.PROCESSING}), JobStatus.COMPLETED),
    # A job can fail before it ever reaches the worker.
    JobEvent.FAIL: (
        frozenset({JobStatus.PENDING, JobStatus.SCHEDULED, JobStatus.PROCESSING}),
        JobStatus.FAILED,
    ),
    JobEvent.CANCEL: (frozenset({JobStatus.PENDING, JobStatus.SCHEDULED}), JobStatus.CANCELLED),
    JobEvent.RETRY: (frozenset({JobStatus.FAILED, JobStatus.CANCELLED}), JobStatus.SCHEDULED),
}


def can_apply(job: EmailJob, event: JobEvent) -> bool:
    allowed_from, _ = TRANSITIONS[event]
    return job.status in allowed_from


def transition(
    job: EmailJob,
    event: JobEvent,
    *,
    now: datetime | None = None,
    error: str | None = None,
    provider_id: str | None = None,
    message_id: str | None = None,
    scheduled_for: str | None = None,
) -> EmailJob:
    """
    Apply `event` to `job`.

    Args:
        job: Current job record
        event: Event to apply
        now: Clock override for updated_at
        error: Failure text (FAIL)
        provider_id: Mail provider message id (SUCCEED)
        message_id: Queue message id (QUEUE, RETRY)
        scheduled_for: New delivery time (QUEUE, RETRY); kept when omitted

    Returns:
        A new EmailJob; the input is not modified.

    Raises:
        InvalidTransitionError: if the event is not legal from the job's status
    """
    allowed_from, target = TRANSITIONS[event]
    if job.status not in allowed_from:
        raise InvalidTransitionError(job.id, job.status.value, event.value)

    changes: dict = {
        "status": target,
        "updated_at": isoformat(now or utc_now()),
    }

    if event in (JobEvent.QUEUE, JobEvent.RETRY):
        # attempts counts hand-offs to the queue
        changes["attempts"] = job.attempts + 1
        changes["last_error"] = None
        changes["queue_message_id"] = message_id
        if scheduled_for:
            changes["scheduled_for"] = scheduled_for
    elif event is JobEvent.SUCCEED:
        changes["resend_email_id"] = provider_id
        changes["last_error"] = None
    elif event is JobEvent.FAIL:
        changes["last_error"] = error or "Unknown error"

    return dataclasses.replace(job, **changes)


def new_resend_job(
    original: EmailJob, job_id: str, *, scheduled_for: str, now: datetime | None = None
) -> EmailJob:
    """
    Build a fresh pending job that re-delivers a completed one.

    The completed record is left untouched; the copy points back to it
    through `resend_of`.
    """
    if original.status is not JobStatus.COMPLETED:
        raise InvalidTransitionError(original.id, original.status.value, "resend")

    timestamp = isoformat(now or utc_now())
    return EmailJob(
        id=job_id,
        batch_id=original.batch_id,
        session_id=original.session_id,
        type=original.type,
        recipient_email=original.recipient_email,
        recipient_name=original.recipient_name,
        scheduled_for=scheduled_for,
        status=JobStatus.PENDING,
        attempts=0,
        role=original.role,
        resend_of=original.id,
        metadata=dict(original.metadata),
        created_at=timestamp,
        updated_at=timestamp,
    )


def count_outcomes(statuses: Iterable[JobStatus]) -> dict[str, int]:
    counts = {"total": 0, "completed": 0, "failed": 0, "cancelled": 0}
    for status in statuses:
        counts["total"] += 1
        if status is JobStatus.COMPLETED:
            counts["completed"] += 1
        elif status is JobStatus.FAILED:
            counts["failed"] += 1
        elif status is JobStatus.CANCELLED:
            counts["cancelled"] += 1
    return counts


def derive_batch_status(statuses: Iterable[JobStatus]) -> BatchStatus:
    """Batch status as a pure function of its jobs' statuses."""
    statuses = list(statuses)
    if not statuses:
        return BatchStatus.PENDING

    if all(s in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED) for s in statuses):
        failed = sum(1 for s in statuses if s is JobStatus.FAILED)
        if failed == len(statuses):
            return BatchStatus.FAILED
        if failed:
            return BatchStatus.PARTIAL_FAILURE
        if all(s is JobStatus.CANCELLED for s in statuses):
            return BatchStatus.CANCELLED
        return BatchStatus.COMPLETED

    if any(s is JobStatus.PROCESSING for s in statuses):
        return BatchStatus.IN_PROGRESS
    if any(s in (JobStatus.SCHEDULED, JobStatus.COMPLETED) for s in statuses):
        return BatchStatus.SCHEDULED
    return BatchStatus.PENDING
