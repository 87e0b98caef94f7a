"""
Explicit wiring of the email jobs clients and services.

The API lifespan and the CLI jobs both build an `EmailJobServices` from
settings and close it on the way out; nothing is created at import time.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from app.config import Settings
from app.features.email_jobs.repository.job_store import JobStore
from app.features.email_jobs.repository.session_repository import SessionRepository
from app.features.email_jobs.services.delivery_worker import DeliveryWorker
from app.features.email_jobs.services.job_status_service import JobStatusService
from app.features.email_jobs.services.scheduler import JobScheduler
from app.infrastructure.observability.logging import get_logger
from app.services.baseql_client import BaseQLClient
from app.services.qstash_client import QStashClient
from app.services.qstash_receiver import QStashReceiver
from app.services.redis_client import FastRedisClient
from app.services.resend_client import ResendClient

logger = get_logger(__name__)


@dataclass(slots=True)
class EmailJobServices:
    settings: Settings
    redis: FastRedisClient
    queue: QStashClient
    receiver: QStashReceiver
    mailer: ResendClient
    baseql: BaseQLClient
    store: JobStore
    sessions: SessionRepository
    scheduler: JobScheduler
    worker: DeliveryWorker
    status: JobStatusService

    async def close(self) -> None:
        await self.queue.close()
        await self.mailer.close()
        await self.baseql.close()
        await self.redis.close()


async def create_services(settings: Settings) -> EmailJobServices:
    """
    Build every client and service. A Redis connection failure is logged,
    not raised; store operations then answer with JobStoreUnavailableError.
    """
    redis = FastRedisClient(settings)
    try:
        await redis.initialize()
    except RuntimeError as e:
        logger.error("Redis initialization failed", error=str(e))

    queue = QStashClient(settings)
    mailer = ResendClient(settings)
    baseql = BaseQLClient(settings)
    store = JobStore(redis, settings)
    scheduler = JobScheduler(store, queue, settings)

    logger.info(
        "Email job services ready",
        queue_configured=queue.configured,
        mail_configured=mailer.configured,
        session_source_configured=baseql.configured,
        test_mode=settings.EMAIL_TEST_MODE,
    )

    return EmailJobServices(
        settings=settings,
        redis=redis,
        queue=queue,
        receiver=QStashReceiver(settings),
        mailer=mailer,
        baseql=baseql,
        store=store,
        sessions=SessionRepository(baseql),
        scheduler=scheduler,
        worker=DeliveryWorker(store, mailer, settings),
        status=JobStatusService(store, scheduler),
    )


@asynccontextmanager
async def email_job_services(settings: Settings) -> AsyncIterator[EmailJobServices]:
    services = await create_services(settings)
    try:
        yield services
    finally:
        await services.close()
