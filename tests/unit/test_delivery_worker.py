import asyncio
import base64
import json

import pytest

from app.features.email_jobs.domain.models import BatchStatus, EmailJob, EmailJobType, JobStatus
from app.features.email_jobs.domain.payloads import NotificationPayload, PayloadError, SingleDelivery
from app.features.email_jobs.domain.state_machine import JobEvent
from app.features.email_jobs.services.delivery_worker import (
    DISABLED_ERROR,
    MISSING_ID_ERROR,
    DeliveryWorker,
)
from app.services.resend_client import SendResult
from tests.conftest import NOW, make_settings

METADATA = {
    "sessionType": "Team Check-in",
    "teamName": "Rocket Team",
    "mentorName": "Lee Lead",
    "mentorNames": ["Lee Lead"],
    "sessionDate": "Thursday, December 5, 2024",
    "sessionTime": "1:00 PM ET",
}


def _payload(email, name="Student"):
    return NotificationPayload(
        type=EmailJobType.PREP_24H,
        session_id="sess-1",
        session_name="Team Check-in",
        recipient_email=email,
        recipient_name=name,
        contact_id=None,
        scheduled_for=NOW,
        metadata=dict(METADATA),
    )


async def _scheduled_batch(scheduler, fake_queue, *emails):
    result = await scheduler.schedule_notifications([_payload(e) for e in emails])
    return result.batch_ids[0], fake_queue.published[-1].body


def _b64(value: dict) -> str:
    return base64.b64encode(json.dumps(value).encode()).decode()


@pytest.mark.asyncio
async def test_batch_delivery_completes_every_job(scheduler, fake_queue, delivery_worker, fake_mailer, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")

    report = await delivery_worker.process_message(body)

    assert report.success
    assert report.is_batch
    assert [r.email_id for r in report.results] == ["email-1", "email-2"]
    assert [e.to for e in fake_mailer.sent] == ["ada@students.org", "ben@students.org"]
    assert fake_mailer.sent[0].subject == "Submit meeting prep to unlock Zoom link - session tomorrow"
    assert fake_mailer.sent[0].headers == {"X-Entity-Ref-ID": report.results[0].job_id}

    jobs = await store.get_batch_jobs(batch_id)
    assert {j.status for j in jobs} == {JobStatus.COMPLETED}
    assert jobs[1].resend_email_id == "email-2"
    assert (await store.get_batch(batch_id)).status is BatchStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_provider_id_fails_that_job_only(scheduler, fake_queue, delivery_worker, fake_mailer, store):
    batch_id, body = await _scheduled_batch(
        scheduler, fake_queue, "a@students.org", "b@students.org", "c@students.org"
    )
    fake_mailer.batch_results = ["a", "b", None]

    report = await delivery_worker.process_message(body)

    assert not report.success
    assert [r.error for r in report.results] == [None, None, MISSING_ID_ERROR]
    jobs = await store.get_batch_jobs(batch_id)
    assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED, JobStatus.FAILED]
    batch = await store.get_batch(batch_id)
    assert (batch.completed, batch.failed) == (2, 1)
    assert batch.status is BatchStatus.PARTIAL_FAILURE
    assert await store.get_dead_letters(10) == []


@pytest.mark.asyncio
async def test_rejected_chunk_fails_only_its_jobs(scheduler, fake_queue, delivery_worker, fake_mailer, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")
    fake_mailer.batch_results = ["email-ada", SendResult(error="Too many recipients")]

    report = await delivery_worker.process_message(body)

    assert [(r.email_id, r.error) for r in report.results] == [("email-ada", None), (None, "Too many recipients")]
    ada, ben = await store.get_batch_jobs(batch_id)
    assert (ada.status, ada.resend_email_id) == (JobStatus.COMPLETED, "email-ada")
    assert (ben.status, ben.last_error) == (JobStatus.FAILED, "Too many recipients")


@pytest.mark.asyncio
async def test_test_mode_redirects_and_names_true_recipient(scheduler, fake_queue, fake_mailer, store, clock):
    worker = DeliveryWorker(
        store,
        fake_mailer,
        make_settings(EMAIL_TEST_MODE=True, EMAIL_TEST_RECIPIENT="qa@example.com", EMAIL_SUBJECT_PREFIX="[TEST] "),
        clock=clock,
    )
    _, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org")

    await worker.process_message(body)

    [email] = fake_mailer.sent
    assert email.to == "qa@example.com"
    assert email.subject == "[TEST] Submit meeting prep to unlock Zoom link - session tomorrow (to: ada@students.org)"


@pytest.mark.asyncio
async def test_cancelled_jobs_are_skipped(scheduler, fake_queue, delivery_worker, fake_mailer, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")
    cancelled_id = (await store.get_batch(batch_id)).jobs[0]
    await store.apply(cancelled_id, JobEvent.CANCEL)

    report = await delivery_worker.process_message(body)

    assert report.success
    skipped = report.results[0]
    assert (skipped.job_id, skipped.skipped, skipped.error) == (cancelled_id, True, "Job is cancelled")
    assert [e.to for e in fake_mailer.sent] == ["ben@students.org"]
    assert (await store.get_job(cancelled_id)).status is JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_redelivered_message_does_not_send_twice(scheduler, fake_queue, delivery_worker, fake_mailer):
    _, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org")

    await delivery_worker.process_message(body)
    report = await delivery_worker.process_message(body)

    assert len(fake_mailer.sent) == 1
    assert report.results[0].error == "Job is completed"


@pytest.mark.asyncio
async def test_disabled_mailer_fails_jobs(scheduler, fake_queue, delivery_worker, fake_mailer, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org")
    fake_mailer.configured = False

    report = await delivery_worker.process_message(body)

    assert report.disabled
    assert report.to_record()["disabled"] is True
    [job] = await store.get_batch_jobs(batch_id)
    assert job.status is JobStatus.FAILED
    assert job.last_error == DISABLED_ERROR


@pytest.mark.asyncio
async def test_provider_error_fails_all_sendable_jobs(scheduler, fake_queue, delivery_worker, fake_mailer, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")
    fake_mailer.fail_with = "Domain not verified"

    report = await delivery_worker.process_message(body)

    assert [r.error for r in report.results] == ["Domain not verified"] * 2
    assert {j.status for j in await store.get_batch_jobs(batch_id)} == {JobStatus.FAILED}


@pytest.mark.asyncio
async def test_slow_provider_times_out(scheduler, fake_queue, fake_mailer, store, clock):
    worker = DeliveryWorker(store, fake_mailer, make_settings(WORKER_MAX_DURATION_SECONDS=0.05), clock=clock)
    fake_mailer.delay_s = 1
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org")

    report = await worker.process_message(body)

    assert report.results[0].error == "Delivery timed out after 0.05s"
    [job] = await store.get_batch_jobs(batch_id)
    assert job.status is JobStatus.FAILED
    assert fake_mailer.sent == []


@pytest.mark.asyncio
async def test_final_attempt_goes_to_dead_letter_queue(delivery_worker, fake_mailer, store):
    job = EmailJob(
        id="job-legacy",
        batch_id=None,
        session_id="sess-1",
        type=EmailJobType.PREP_24H,
        recipient_email="ada@students.org",
        recipient_name="Ada Student",
        scheduled_for="2024-12-02T15:00:00Z",
        status=JobStatus.SCHEDULED,
        attempts=3,
    )
    await store.save_job(job)
    fake_mailer.fail_with = "Mailbox full"
    body = SingleDelivery(
        job_id=job.id,
        session_id="sess-1",
        type=EmailJobType.PREP_24H,
        to=job.recipient_email,
        recipient_name=job.recipient_name,
        metadata=dict(METADATA),
    ).to_record()

    report = await delivery_worker.process_message(body)

    assert report.is_batch is False
    [entry] = await store.get_dead_letters(10)
    assert entry.job.id == "job-legacy"
    assert entry.reason == "Mailbox full"


@pytest.mark.asyncio
async def test_invalid_body_raises_payload_error(delivery_worker):
    with pytest.raises(PayloadError):
        await delivery_worker.process_message({"isBatch": True, "type": "prep24h"})
    with pytest.raises(PayloadError):
        await delivery_worker.process_message({"type": "unknown"})


@pytest.mark.asyncio
async def test_callback_reconciles_jobs_left_processing(scheduler, fake_queue, delivery_worker, store):
    batch_id, _ = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")
    first, second = (await store.get_batch(batch_id)).jobs
    await store.apply(first, JobEvent.START)
    await store.apply(second, JobEvent.START)

    summary = await delivery_worker.handle_callback(
        {
            "status": 200,
            "body": _b64(
                {
                    "success": False,
                    "results": [
                        {"jobId": first, "emailId": "email-9", "error": None},
                        {"jobId": second, "emailId": None, "error": "Mailbox full"},
                    ],
                }
            ),
        }
    )

    assert summary == {"reconciled": 2}
    assert (await store.get_job(first)).status is JobStatus.COMPLETED
    assert (await store.get_job(second)).last_error == "Mailbox full"


@pytest.mark.asyncio
async def test_callback_with_garbage_body_is_ignored(delivery_worker):
    assert await delivery_worker.handle_callback({"body": "not base64!"}) == {"reconciled": 0}


@pytest.mark.asyncio
async def test_failure_callback_dead_letters_unfinished_jobs(scheduler, fake_queue, delivery_worker, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")
    first, second = (await store.get_batch(batch_id)).jobs
    await store.apply(first, JobEvent.CANCEL)

    summary = await delivery_worker.handle_failure({"status": 500, "sourceBody": _b64(body)})

    assert summary == {"failed": 1, "deadLettered": 1}
    job = await store.get_job(second)
    assert job.status is JobStatus.FAILED
    assert job.last_error == "Queue delivery retries exhausted (last HTTP status 500)"
    assert [e.job.id for e in await store.get_dead_letters(10)] == [second]


@pytest.mark.asyncio
async def test_outcomes_are_recorded_after_the_send_deadline(
    scheduler, fake_queue, fake_mailer, store, clock, monkeypatch
):
    worker = DeliveryWorker(store, fake_mailer, make_settings(WORKER_MAX_DURATION_SECONDS=0.05), clock=clock)
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org", "ben@students.org")
    apply = store.apply

    async def slow_success(job_id, event, **details):
        if event is JobEvent.SUCCEED:
            await asyncio.sleep(0.1)
        return await apply(job_id, event, **details)

    monkeypatch.setattr(store, "apply", slow_success)

    report = await worker.process_message(body)

    assert report.success
    assert {j.status for j in await store.get_batch_jobs(batch_id)} == {JobStatus.COMPLETED}


@pytest.mark.asyncio
async def test_failure_callback_leaves_failed_jobs_alone(scheduler, fake_queue, delivery_worker, store):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org")
    [job_id] = (await store.get_batch(batch_id)).jobs
    await store.apply(job_id, JobEvent.FAIL, error="Mailbox full")

    summary = await delivery_worker.handle_failure({"status": 500, "sourceBody": _b64(body)})

    assert summary == {"failed": 0, "deadLettered": 0}
    assert await store.get_dead_letters(10) == []
    assert (await store.get_job(job_id)).last_error == "Mailbox full"


@pytest.mark.asyncio
async def test_failure_callback_skips_jobs_moved_to_newer_message(
    scheduler, fake_queue, delivery_worker, status_service, store
):
    batch_id, body = await _scheduled_batch(scheduler, fake_queue, "ada@students.org")
    [job_id] = (await store.get_batch(batch_id)).jobs
    await store.apply(job_id, JobEvent.FAIL, error="Mailbox full")
    retried = await status_service.retry_job(job_id)
    assert retried.queue_message_id == "msg-2"

    summary = await delivery_worker.handle_failure(
        {"status": 500, "sourceMessageId": "msg-1", "sourceBody": _b64(body)}
    )

    assert summary == {"failed": 0, "deadLettered": 0}
    assert (await store.get_job(job_id)).status is JobStatus.SCHEDULED
    assert await store.get_dead_letters(10) == []
