"""
Tests for the job state machine and batch status derivation.
"""

import pytest

from app.features.email_jobs.domain.errors import InvalidTransitionError
from app.features.email_jobs.domain.models import BatchStatus, EmailJob, EmailJobType, JobStatus
from app.features.email_jobs.domain.state_machine import (
    JobEvent,
    can_apply,
    count_outcomes,
    derive_batch_status,
    new_resend_job,
    transition,
)


def _job(status: JobStatus = JobStatus.PENDING, attempts: int = 0) -> EmailJob:
    return EmailJob(
        id="job-1",
        batch_id="batch-1",
        session_id="sess-1",
        type=EmailJobType.PREP_24H,
        recipient_email="ada@students.org",
        recipient_name="Ada Student",
        scheduled_for="2024-12-06T15:00:00Z",
        status=status,
        attempts=attempts,
    )


def test_happy_path_counts_one_attempt():
    job = transition(_job(), JobEvent.QUEUE, message_id="msg-1")
    assert job.status is JobStatus.SCHEDULED
    assert job.attempts == 1
    assert job.queue_message_id == "msg-1"

    job = transition(job, JobEvent.START)
    assert job.status is JobStatus.PROCESSING

    job = transition(job, JobEvent.SUCCEED, provider_id="email-1")
    assert job.status is JobStatus.COMPLETED
    assert job.resend_email_id == "email-1"
    assert job.attempts == 1


def test_transition_returns_copy():
    original = _job()
    transition(original, JobEvent.QUEUE)
    assert original.status is JobStatus.PENDING
    assert original.attempts == 0


def test_retry_can_move_delivery_time():
    failed = _job(JobStatus.FAILED, attempts=1)

    moved = transition(failed, JobEvent.RETRY, scheduled_for="2024-12-02T15:00:00Z")
    kept = transition(failed, JobEvent.RETRY)

    assert moved.scheduled_for == "2024-12-02T15:00:00Z"
    assert kept.scheduled_for == "2024-12-06T15:00:00Z"


def test_fail_records_error():
    job = transition(_job(JobStatus.PROCESSING, attempts=1), JobEvent.FAIL, error="Mailbox full")
    assert job.status is JobStatus.FAILED
    assert job.last_error == "Mailbox full"


def test_fail_without_error_text():
    job = transition(_job(JobStatus.SCHEDULED, attempts=1), JobEvent.FAIL)
    assert job.last_error == "Unknown error"


def test_retry_increments_attempts_and_clears_error():
    failed = transition(_job(JobStatus.PROCESSING, attempts=1), JobEvent.FAIL, error="boom")
    retried = transition(failed, JobEvent.RETRY)
    assert retried.status is JobStatus.SCHEDULED
    assert retried.attempts == 2
    assert retried.last_error is None


def test_cancelled_job_can_be_retried():
    job = transition(_job(JobStatus.SCHEDULED, attempts=1), JobEvent.CANCEL)
    assert job.status is JobStatus.CANCELLED
    assert transition(job, JobEvent.RETRY).attempts == 2


@pytest.mark.parametrize(
    "status,event",
    [
        (JobStatus.PROCESSING, JobEvent.CANCEL),
        (JobStatus.COMPLETED, JobEvent.CANCEL),
        (JobStatus.COMPLETED, JobEvent.RETRY),
        (JobStatus.COMPLETED, JobEvent.FAIL),
        (JobStatus.CANCELLED, JobEvent.START),
        (JobStatus.PROCESSING, JobEvent.START),
        (JobStatus.SCHEDULED, JobEvent.SUCCEED),
        (JobStatus.SCHEDULED, JobEvent.QUEUE),
    ],
)
def test_illegal_transitions_raise(status, event):
    job = _job(status, attempts=1)
    assert can_apply(job, event) is False
    with pytest.raises(InvalidTransitionError) as exc:
        transition(job, event)
    assert exc.value.status == status.value
    assert exc.value.event == event.value


def test_resend_builds_new_pending_job():
    completed = _job(JobStatus.COMPLETED, attempts=1)
    copy = new_resend_job(completed, "job-2", scheduled_for="2024-12-07T00:00:00Z")

    assert copy.id == "job-2"
    assert copy.status is JobStatus.PENDING
    assert copy.attempts == 0
    assert copy.resend_of == "job-1"
    assert copy.batch_id == completed.batch_id
    assert completed.status is JobStatus.COMPLETED


def test_resend_requires_completed_job():
    with pytest.raises(InvalidTransitionError):
        new_resend_job(_job(JobStatus.FAILED, attempts=1), "job-2", scheduled_for="2024-12-07T00:00:00Z")


def test_count_outcomes():
    counts = count_outcomes(
        [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SCHEDULED, JobStatus.COMPLETED]
    )
    assert counts == {"total": 5, "completed": 2, "failed": 1, "cancelled": 1}


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ([], BatchStatus.PENDING),
        ([JobStatus.PENDING, JobStatus.PENDING], BatchStatus.PENDING),
        ([JobStatus.SCHEDULED, JobStatus.PENDING], BatchStatus.SCHEDULED),
        ([JobStatus.COMPLETED, JobStatus.SCHEDULED], BatchStatus.SCHEDULED),
        ([JobStatus.PROCESSING, JobStatus.COMPLETED], BatchStatus.IN_PROGRESS),
        ([JobStatus.COMPLETED, JobStatus.COMPLETED], BatchStatus.COMPLETED),
        ([JobStatus.COMPLETED, JobStatus.CANCELLED], BatchStatus.COMPLETED),
        ([JobStatus.CANCELLED, JobStatus.CANCELLED], BatchStatus.CANCELLED),
        ([JobStatus.COMPLETED, JobStatus.FAILED], BatchStatus.PARTIAL_FAILURE),
        ([JobStatus.CANCELLED, JobStatus.FAILED], BatchStatus.PARTIAL_FAILURE),
        ([JobStatus.FAILED, JobStatus.FAILED], BatchStatus.FAILED),
    ],
)
def test_derive_batch_status(statuses, expected):
    assert derive_batch_status(statuses) is expected
