"""
FastAPI dependencies for the services built in the application lifespan.

Routes never reach for module-level clients; tests swap any of these through
`app.dependency_overrides`.
"""

from fastapi import Request

from app.config import Settings
from app.features.email_jobs.container import EmailJobServices
from app.features.email_jobs.repository.session_repository import SessionRepository
from app.features.email_jobs.services.delivery_worker import DeliveryWorker
from app.features.email_jobs.services.job_status_service import JobStatusService
from app.features.email_jobs.services.scheduler import JobScheduler
from app.services.qstash_receiver import QStashReceiver
from app.services.redis_client import FastRedisClient


def get_services(request: Request) -> EmailJobServices:
    return request.app.state.services


def get_settings(request: Request) -> Settings:
    return request.app.state.services.settings


def get_redis(request: Request) -> FastRedisClient:
    return get_services(request).redis


def get_scheduler(request: Request) -> JobScheduler:
    return get_services(request).scheduler


def get_status_service(request: Request) -> JobStatusService:
    return get_services(request).status


def get_delivery_worker(request: Request) -> DeliveryWorker:
    return get_services(request).worker


def get_receiver(request: Request) -> QStashReceiver:
    return get_services(request).receiver


def get_session_repository(request: Request) -> SessionRepository:
    return get_services(request).sessions
