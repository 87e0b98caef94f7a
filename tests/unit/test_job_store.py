import json

import pytest

from app.features.email_jobs.domain.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreUnavailableError,
)
from app.features.email_jobs.domain.models import BatchStatus, EmailJob, EmailJobType, JobStatus
from app.features.email_jobs.domain.state_machine import JobEvent
from app.features.email_jobs.repository.job_store import (
    DLQ_KEY,
    batch_jobs_key,
    job_key,
    session_batches_key,
    user_active_key,
)


def _job(job_id, status=JobStatus.SCHEDULED, attempts=1, batch_id="batch-1"):
    return EmailJob(
        id=job_id,
        batch_id=batch_id,
        session_id="sess-1",
        type=EmailJobType.PREP_24H,
        recipient_email=f"{job_id}@students.org",
        recipient_name=job_id,
        scheduled_for="2024-12-06T15:00:00Z",
        status=status,
        attempts=attempts,
    )


async def _batch(store, *jobs, created_by="admin-1"):
    return await store.create_batch(
        batch_id="batch-1",
        session_id="sess-1",
        session_name="Team Check-in",
        job_type=EmailJobType.PREP_24H,
        jobs=list(jobs),
        created_by=created_by,
    )


@pytest.mark.asyncio
async def test_create_batch_writes_jobs_and_indexes(store, fake_redis):
    batch = await _batch(store, _job("j-1"), _job("j-2"))

    assert batch.total == 2
    assert batch.status is BatchStatus.SCHEDULED
    assert fake_redis.lists[batch_jobs_key("batch-1")] == ["j-1", "j-2"]
    assert fake_redis.lists[session_batches_key("sess-1")] == ["batch-1"]
    assert fake_redis.sets[user_active_key("admin-1")] == {"batch-1"}
    assert fake_redis.ttls[user_active_key("admin-1")] == 24 * 60 * 60
    assert fake_redis.ttls[job_key("j-1")] == 90 * 24 * 60 * 60

    stored = json.loads(fake_redis.values[job_key("j-1")])
    assert stored["recipientEmail"] == "j-1@students.org"
    assert stored["status"] == "scheduled"


@pytest.mark.asyncio
async def test_apply_refreshes_batch_counters(store):
    await _batch(store, _job("j-1"), _job("j-2"), _job("j-3"))

    await store.apply("j-1", JobEvent.START)
    await store.apply("j-1", JobEvent.SUCCEED, provider_id="email-1")
    await store.apply("j-2", JobEvent.FAIL, error="bounced")
    await store.apply("j-3", JobEvent.CANCEL)

    batch = await store.get_batch("batch-1")
    assert (batch.total, batch.completed, batch.failed, batch.cancelled) == (3, 1, 1, 1)
    assert batch.status is BatchStatus.PARTIAL_FAILURE
    assert batch.jobs == ["j-1", "j-2", "j-3"]


@pytest.mark.asyncio
async def test_terminal_batch_leaves_user_active_set(store, fake_redis):
    await _batch(store, _job("j-1"))

    await store.apply("j-1", JobEvent.CANCEL)

    assert (await store.get_batch("batch-1")).status is BatchStatus.COMPLETED
    assert fake_redis.sets[user_active_key("admin-1")] == set()


@pytest.mark.asyncio
async def test_apply_rejects_illegal_event_without_writing(store):
    await _batch(store, _job("j-1", status=JobStatus.COMPLETED))

    with pytest.raises(InvalidTransitionError):
        await store.apply("j-1", JobEvent.CANCEL)
    assert (await store.get_job("j-1")).status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_apply_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        await store.apply("missing", JobEvent.START)


@pytest.mark.asyncio
async def test_append_job_grows_total(store):
    await _batch(store, _job("j-1", status=JobStatus.COMPLETED))

    batch = await store.append_job("batch-1", _job("j-2"))

    assert batch.total == 2
    assert batch.completed == 1
    assert batch.status is BatchStatus.SCHEDULED


@pytest.mark.asyncio
async def test_expired_job_records_still_count_toward_total(store, fake_redis):
    await _batch(store, _job("j-1"), _job("j-2"))
    del fake_redis.values[job_key("j-2")]

    batch = await store.refresh_batch("batch-1")

    assert batch.total == 2
    assert [j.id for j in await store.get_batch_jobs("batch-1")] == ["j-1"]


@pytest.mark.asyncio
async def test_set_queue_message_id_keeps_status(store):
    await _batch(store, _job("j-1"))

    await store.set_queue_message_id("j-1", "msg-9")
    await store.set_queue_message_id("missing", "msg-10")

    job = await store.get_job("j-1")
    assert job.queue_message_id == "msg-9"
    assert job.status is JobStatus.SCHEDULED
    assert await store.get_job("missing") is None


@pytest.mark.asyncio
async def test_delete_batch_is_idempotent(store, fake_redis):
    await _batch(store, _job("j-1"), _job("j-2"))

    assert await store.delete_batch("batch-1") is True
    assert await store.delete_batch("batch-1") is False

    assert await store.get_batch("batch-1") is None
    assert await store.get_job("j-1") is None
    assert await store.get_session_batch_ids("sess-1") == []
    assert fake_redis.sets[user_active_key("admin-1")] == set()


@pytest.mark.asyncio
async def test_scan_batch_ids_ignores_job_lists(store):
    await _batch(store, _job("j-1"))
    assert await store.scan_batch_ids() == ["batch-1"]


@pytest.mark.asyncio
async def test_dead_letters_newest_first(store):
    await store.add_dead_letter(_job("j-1", status=JobStatus.FAILED, attempts=3), "bounced")
    await store.add_dead_letter(_job("j-2", status=JobStatus.FAILED, attempts=3), "blocked")

    entries = await store.get_dead_letters(10)
    assert [e.job.id for e in entries] == ["j-2", "j-1"]
    assert entries[0].reason == "blocked"
    assert entries[0].reviewed is False

    assert [e.job.id for e in await store.get_dead_letters(1)] == ["j-2"]
    assert await store.get_dead_letters(0) == []


@pytest.mark.asyncio
async def test_unavailable_redis_raises_store_error(store, fake_redis):
    fake_redis.available = False

    with pytest.raises(JobStoreUnavailableError):
        await store.get_job("j-1")
    with pytest.raises(JobStoreUnavailableError):
        await store.add_dead_letter(_job("j-1"), "x")
    assert DLQ_KEY not in fake_redis.lists
