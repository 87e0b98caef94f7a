"""
Domain subpackage for the email jobs feature.
"""

from .errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreError,
    JobStoreUnavailableError,
    LiveJobConflictError,
)
from .models import (
    BatchStatus,
    DeadLetterEntry,
    EmailBatch,
    EmailJob,
    EmailJobType,
    JobProgress,
    JobStatus,
    RecipientRole,
)
from .payloads import (
    BatchDelivery,
    DeliveryPayload,
    DeliveryRecipient,
    NotificationPayload,
    PayloadError,
    SingleDelivery,
    parse_delivery_payload,
)
from .state_machine import JobEvent, derive_batch_status, transition

__all__ = [
    "BatchDelivery",
    "BatchStatus",
    "DeadLetterEntry",
    "DeliveryPayload",
    "DeliveryRecipient",
    "EmailBatch",
    "EmailJob",
    "EmailJobType",
    "InvalidTransitionError",
    "JobEvent",
    "JobNotFoundError",
    "JobProgress",
    "JobStatus",
    "JobStoreError",
    "JobStoreUnavailableError",
    "LiveJobConflictError",
    "NotificationPayload",
    "PayloadError",
    "RecipientRole",
    "SingleDelivery",
    "derive_batch_status",
    "parse_delivery_payload",
    "transition",
]
