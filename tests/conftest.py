import asyncio
import fnmatch
import inspect
import itertools
import json
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.features.email_jobs.container import EmailJobServices
from app.features.email_jobs.domain.snapshots import SessionSnapshot
from app.features.email_jobs.repository.job_store import JobStore
from app.features.email_jobs.services.delivery_worker import DeliveryWorker
from app.features.email_jobs.services.job_status_service import JobStatusService
from app.features.email_jobs.services.scheduler import JobScheduler
from app.main import create_app
from app.services.baseql_client import SessionSourceError
from app.services.qstash_client import PublishResult, QueueClientError
from app.services.qstash_receiver import QStashReceiver
from app.services.redis_client import RedisUnavailableError
from app.services.resend_client import MISSING_ID_ERROR, MailProviderError, SendResult

NOW = datetime(2024, 12, 2, 15, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRedis:
    """In-memory stand-in for FastRedisClient."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.available = True

    def _check(self, operation: str) -> None:
        if not self.available:
            raise RedisUnavailableError(operation)

    def _expire(self, key: str, ttl_s: int | None) -> None:
        if ttl_s:
            self.ttls[key] = ttl_s

    async def ping(self) -> bool:
        return self.available

    async def get_json(self, key: str) -> dict | None:
        self._check("GET")
        raw = self.values.get(key)
        return json.loads(raw) if raw else None

    async def get_many_json(self, keys: list[str]) -> list[dict | None]:
        self._check("MGET")
        return [json.loads(self.values[k]) if k in self.values else None for k in keys]

    async def set_json(self, key: str, value: dict, ttl_s: int | None = None) -> None:
        self._check("SET")
        self.values[key] = json.dumps(value)
        self._expire(key, ttl_s)

    async def update_json(self, key: str, mutate, ttl_s: int | None = None) -> dict | None:
        current = await self.get_json(key)
        updated = mutate(current)
        if inspect.isawaitable(updated):
            updated = await updated
        if updated is None:
            return current
        await self.set_json(key, updated, ttl_s)
        return updated

    async def push_to_list(self, key: str, *values: str, ttl_s: int | None = None) -> int:
        self._check("RPUSH")
        items = self.lists.setdefault(key, [])
        items.extend(values)
        self._expire(key, ttl_s)
        return len(items)

    async def prepend_to_list(self, key: str, value: str, ttl_s: int | None = None) -> int:
        self._check("LPUSH")
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        self._expire(key, ttl_s)
        return len(items)

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        self._check("LRANGE")
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start : end + 1])

    async def remove_from_list(self, key: str, value: str) -> int:
        self._check("LREM")
        items = self.lists.get(key, [])
        kept = [v for v in items if v != value]
        self.lists[key] = kept
        return len(items) - len(kept)

    async def add_to_set(self, key: str, member: str, ttl_s: int | None = None) -> None:
        self._check("SADD")
        self.sets.setdefault(key, set()).add(member)
        self._expire(key, ttl_s)

    async def remove_from_set(self, key: str, member: str) -> None:
        self._check("SREM")
        self.sets.get(key, set()).discard(member)

    async def set_members(self, key: str) -> set[str]:
        self._check("SMEMBERS")
        return set(self.sets.get(key, set()))

    async def delete(self, *keys: str) -> int:
        self._check("DELETE")
        removed = 0
        for key in keys:
            for store in (self.values, self.lists, self.sets):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan_keys(self, pattern: str) -> list[str]:
        self._check("SCAN")
        keys = itertools.chain(self.values, self.lists, self.sets)
        return sorted({k for k in keys if fnmatch.fnmatchcase(k, pattern)})


class FakeQueue:
    """Records published messages; can be told to reject them."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.published = []
        self.fail_with: str | None = None
        self.reject_batches: set[int] = set()
        self.cancelled: list[str] = []
        self._ids = itertools.count(1)

    async def publish(self, message) -> str:
        if self.fail_with:
            raise QueueClientError(self.fail_with, status_code=500)
        self.published.append(message)
        return f"msg-{next(self._ids)}"

    async def publish_batch(self, messages) -> list[PublishResult]:
        if self.fail_with:
            raise QueueClientError(self.fail_with, status_code=500)
        results = []
        for index, message in enumerate(messages):
            if index in self.reject_batches:
                results.append(PublishResult(error="destination rejected"))
            else:
                self.published.append(message)
                results.append(PublishResult(message_id=f"msg-{next(self._ids)}"))
        return results

    async def cancel(self, message_id: str) -> bool:
        if self.fail_with:
            raise QueueClientError(self.fail_with, status_code=500)
        self.cancelled.append(message_id)
        return True

    async def close(self) -> None:
        pass


class FakeMailer:
    """
    Resend stand-in. `batch_results` overrides what send_batch returns: an
    id string, None for a missing id, or a SendResult as is.
    """

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.from_address = "Mentorship <noreply@example.com>"
        self.sent = []
        self.batch_results: list[str | SendResult | None] | None = None
        self.fail_with: str | None = None
        self.delay_s: float = 0
        self._ids = itertools.count(1)

    async def _maybe_wait(self) -> None:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

    async def send(self, email) -> str:
        await self._maybe_wait()
        if self.fail_with:
            raise MailProviderError(self.fail_with, status_code=422)
        self.sent.append(email)
        return f"email-{next(self._ids)}"

    async def send_batch(self, emails) -> list[SendResult]:
        await self._maybe_wait()
        if self.fail_with:
            raise MailProviderError(self.fail_with, status_code=422)
        self.sent.extend(emails)
        if self.batch_results is None:
            return [SendResult(email_id=f"email-{next(self._ids)}") for _ in emails]
        results = []
        for item in self.batch_results:
            if isinstance(item, SendResult):
                results.append(item)
            elif item:
                results.append(SendResult(email_id=item))
            else:
                results.append(SendResult(error=MISSING_ID_ERROR))
        return results

    async def close(self) -> None:
        pass


class FakeSessions:
    """SessionRepository stand-in backed by in-memory snapshots."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.sessions: dict[str, SessionSnapshot] = {}
        self.tasks = []
        self.fail_with: str | None = None

    def add(self, *sessions: SessionSnapshot) -> None:
        for session in sessions:
            self.sessions[session.id] = session

    def _check(self) -> None:
        if self.fail_with:
            raise SessionSourceError(self.fail_with, status_code=500)

    async def list_sessions(self) -> list[SessionSnapshot]:
        self._check()
        return list(self.sessions.values())

    async def get_session(self, session_id: str) -> SessionSnapshot | None:
        self._check()
        return self.sessions.get(session_id)

    async def list_open_tasks(self):
        self._check()
        return list(self.tasks)


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "UPSTASH_REDIS_REST_URL": "https://test-redis.upstash.io",
        "APP_BASE_URL": "https://mentors.example.com",
        "QSTASH_TOKEN": "qstash-token",
        "QSTASH_CURRENT_SIGNING_KEY": "sig-current",
        "QSTASH_NEXT_SIGNING_KEY": "sig-next",
        "RESEND_API_KEY": "re_test_key",
        "RESEND_FROM_EMAIL": "Mentorship <noreply@example.com>",
        "CRON_SECRET": "cron-secret",
        "EMAIL_TEST_MODE": False,
        "EMAIL_SUBJECT_PREFIX": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def session_record(
    session_id: str = "sess-1",
    start: datetime | None = None,
    *,
    status: str = "Scheduled",
    require_feedback: bool = True,
    prep_submitted: bool = False,
    feedback: list[dict] | None = None,
) -> dict:
    """A BaseQL session record with two students and a lead + supporting mentor."""
    start = start or NOW + timedelta(days=5)
    return {
        "id": session_id,
        "sessionType": "Team Check-in",
        "scheduledStart": start.isoformat().replace("+00:00", "Z"),
        "duration": 60,
        "status": status,
        "requireFeedback": require_feedback,
        "preMeetingSubmissions": [{"id": "prep-1"}] if prep_submitted else [],
        "feedback": feedback or [],
        "sessionParticipants": [
            {
                "id": "sp-2",
                "role": "Supporting Mentor",
                "status": "Confirmed",
                "contact": [{"id": "m-2", "fullName": "Sam Support", "email": "sam@mentors.org"}],
            },
            {
                "id": "sp-1",
                "role": "Lead Mentor",
                "status": "Confirmed",
                "contact": [{"id": "m-1", "fullName": "Lee Lead", "email": "lee@mentors.org"}],
            },
        ],
        "team": [
            {
                "id": "team-1",
                "teamName": "Rocket Team",
                "members": [
                    {"id": "tm-1", "contact": [{"id": "s-1", "fullName": "Ada Student", "email": "ada@students.org"}]},
                    {"id": "tm-2", "contact": [{"id": "s-2", "fullName": "Ben Student", "email": "ben@students.org"}]},
                    {"id": "tm-3", "contact": [{"id": "s-3", "fullName": "No Email", "email": None}]},
                ],
            }
        ],
    }


def make_session(session_id: str = "sess-1", start: datetime | None = None, **kwargs) -> SessionSnapshot:
    return SessionSnapshot.from_record(session_record(session_id, start, **kwargs))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def store(fake_redis, settings):
    return JobStore(fake_redis, settings)


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def scheduler(store, fake_queue, settings, clock, id_factory):
    return JobScheduler(store, fake_queue, settings, clock=clock, id_factory=id_factory)


@pytest.fixture
def delivery_worker(store, fake_mailer, settings, clock):
    return DeliveryWorker(store, fake_mailer, settings, clock=clock)


@pytest.fixture
def status_service(store, scheduler, clock, id_factory):
    return JobStatusService(store, scheduler, clock=clock, id_factory=id_factory)


@pytest.fixture
def fake_sessions():
    return FakeSessions()


@pytest.fixture
def services(
    settings, fake_redis, fake_queue, fake_mailer, fake_sessions, store, scheduler, delivery_worker, status_service
):
    return EmailJobServices(
        settings=settings,
        redis=fake_redis,
        queue=fake_queue,
        receiver=QStashReceiver(settings),
        mailer=fake_mailer,
        baseql=None,
        store=store,
        sessions=fake_sessions,
        scheduler=scheduler,
        worker=delivery_worker,
        status=status_service,
    )


@pytest.fixture
def client(services):
    """TestClient over an app whose services are the in-memory fakes (no lifespan)."""
    app = create_app(services.settings)
    app.state.services = services
    return TestClient(app)
