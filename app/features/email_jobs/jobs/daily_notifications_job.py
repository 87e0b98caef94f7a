"""
Daily notifications job.

Fetches sessions and open tasks, builds every reminder that is due right now
(prep, feedback, overdue-task digests) and hands them to the scheduler for
immediate delivery. Safe to run more than once a day: recipients that already
have a job of the same type for the session are skipped.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime

from app.config import settings
from app.features.email_jobs.container import email_job_services
from app.features.email_jobs.domain.models import isoformat, utc_now
from app.features.email_jobs.repository.session_repository import SessionRepository
from app.features.email_jobs.services.payload_builder import build_due_notifications
from app.features.email_jobs.services.scheduler import JobScheduler
from app.infrastructure.observability.logging import get_logger
from app.services.baseql_client import SessionSourceError

logger = get_logger(__name__)

MAX_PROCESSING_TIME_MINUTES = 10
CRON_CREATED_BY = "cron"


class DailyNotificationsJob:
    def __init__(
        self,
        sessions: SessionRepository,
        scheduler: JobScheduler,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sessions = sessions
        self.scheduler = scheduler
        self.clock = clock
        self.is_running = False

    async def _run(self, now: datetime) -> dict:
        sessions = await self.sessions.list_sessions()
        tasks = await self.sessions.list_open_tasks()
        payloads = build_due_notifications(sessions, tasks, now)

        by_type: dict[str, int] = {}
        for payload in payloads:
            by_type[payload.type.value] = by_type.get(payload.type.value, 0) + 1

        result = await self.scheduler.schedule_notifications(payloads, created_by=CRON_CREATED_BY)
        return {
            "success": result.success,
            "ranAt": isoformat(now),
            "sessionsChecked": len(sessions),
            "tasksChecked": len(tasks),
            "due": len(payloads),
            "dueByType": by_type,
            "scheduled": result.job_count,
            "duplicates": result.duplicate_count,
            "failed": result.failed_count,
            "batchIds": result.batch_ids,
            "disabled": result.disabled,
            "error": result.error,
        }

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Daily notifications job already running, skipping")
            return {"success": True, "skipped": True, "reason": "already_running"}
        if not self.sessions.configured:
            logger.warning("Session source not configured, daily notifications skipped")
            return {"success": False, "disabled": True, "error": "Session source not configured"}

        self.is_running = True
        try:
            summary = await asyncio.wait_for(
                self._run(self.clock()), timeout=MAX_PROCESSING_TIME_MINUTES * 60
            )
            logger.info(
                "Daily notifications job completed",
                **{k: v for k, v in summary.items() if k != "batchIds"},
            )
            return summary
        except TimeoutError:
            logger.error("Daily notifications job timed out", timeout_minutes=MAX_PROCESSING_TIME_MINUTES)
            return {"success": False, "error": f"Timed out after {MAX_PROCESSING_TIME_MINUTES} minutes"}
        except SessionSourceError as e:
            logger.error("Daily notifications job could not load sessions", error=str(e))
            return {"success": False, "error": str(e)}
        finally:
            self.is_running = False


async def run_daily_notifications_job() -> dict:
    """Build the services, run one pass and shut them down (CLI entry)."""
    async with email_job_services(settings) as services:
        return await DailyNotificationsJob(services.sessions, services.scheduler).run_once()
