"""
Application entry point: builds the email job services in the lifespan and
mounts the routers.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import Settings, settings
from app.features.email_jobs.api import cron_router, jobs_router, qstash_router, schedule_router
from app.features.email_jobs.container import create_services
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.middleware.request_context import RequestContextMiddleware
from app.routes import health

logger = get_logger(__name__)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or settings
    setup_logging(log_level=app_settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build clients and services on startup, close them on shutdown."""
        logger.info(
            "Application starting",
            environment=app_settings.environment,
            debug=app_settings.debug,
            test_mode=app_settings.EMAIL_TEST_MODE,
        )
        app.state.services = await create_services(app_settings)

        yield

        logger.info("Application shutting down")
        try:
            await app.state.services.close()
            logger.info("All services closed successfully")
        except Exception as e:
            logger.error("Error closing services", error=str(e))

    app = FastAPI(
        title="Mentorship Email Jobs",
        description="Scheduled reminder, feedback and digest emails for mentorship sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware, settings=app_settings)

    app.include_router(health.router)
    app.include_router(jobs_router)
    app.include_router(schedule_router)
    app.include_router(qstash_router)
    app.include_router(cron_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
