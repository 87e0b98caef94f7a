"""
Services for the email jobs feature.
"""

from .delivery_worker import DeliveryReport, DeliveryWorker
from .job_status_service import JobStatusService
from .scheduler import JobScheduler, ScheduleResult

__all__ = [
    "DeliveryReport",
    "DeliveryWorker",
    "JobScheduler",
    "JobStatusService",
    "ScheduleResult",
]
