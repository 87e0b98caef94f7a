"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs that job once. Scheduling (daily, every 15 minutes) is left
to the platform's cron.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.features.email_jobs.jobs.daily_notifications_job import run_daily_notifications_job
from app.features.email_jobs.jobs.reconcile_job import run_reconcile_job
from app.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[dict | None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "daily_notifications": run_daily_notifications_job,
    "reconcile_orphans": run_reconcile_job,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "daily_notifications").strip().lower()


async def run_worker(job_name: str | None = None) -> dict | None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    result = await JOB_REGISTRY[name]()
    logger.info("Background worker finished", job=name, success=(result or {}).get("success"))
    return result


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.log_level)
    job_name = _resolve_job_name()
    result = asyncio.run(run_worker(job_name))
    if result is not None and result.get("success") is False:
        sys.exit(1)


if __name__ == "__main__":
    main()
