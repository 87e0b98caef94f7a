"""
HTTP routers for the email jobs feature.
"""

from .cron_router import router as cron_router
from .jobs_router import router as jobs_router
from .qstash_router import router as qstash_router
from .schedule_router import router as schedule_router

__all__ = ["cron_router", "jobs_router", "qstash_router", "schedule_router"]
