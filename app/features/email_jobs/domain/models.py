"""
Domain models for email jobs.

Records are persisted in Redis as camelCase JSON so that the stored shape
matches the payloads exchanged with the delivery queue and the HTTP API.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"  # created, not yet handed to the queue
    SCHEDULED = "scheduled"  # queued, waiting for delivery time
    PROCESSING = "processing"  # claimed by the delivery worker
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


LIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.SCHEDULED, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class EmailJobType(str, Enum):
    PREP_48H = "prep48h"
    PREP_24H = "prep24h"
    MENTOR_PREP = "mentorPrep"
    FEEDBACK = "feedback"
    FEEDBACK_IMMEDIATE = "feedbackImmediate"
    FEEDBACK_FOLLOWUP = "feedbackFollowup"
    TASK_OVERDUE_DIGEST = "taskOverdueDigest"
    SESSION_UPDATE = "sessionUpdate"


class BatchStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_FAILURE = "partial_failure"
    CANCELLED = "cancelled"


TERMINAL_BATCH_STATUSES = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.PARTIAL_FAILURE, BatchStatus.CANCELLED}
)


class RecipientRole(str, Enum):
    STUDENT = "student"
    MENTOR = "mentor"


def utc_now() -> datetime:
    return datetime.now(UTC)


def isoformat(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class EmailJob:
    """A single email delivery to one recipient."""

    id: str
    batch_id: str | None
    session_id: str | None
    type: EmailJobType
    recipient_email: str
    recipient_name: str
    scheduled_for: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    role: RecipientRole | None = None
    last_error: str | None = None
    resend_email_id: str | None = None
    queue_message_id: str | None = None
    resend_of: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self) -> dict[str, Any]:
        record = {
            "id": self.id,
            "batchId": self.batch_id,
            "sessionId": self.session_id,
            "type": self.type.value,
            "recipientEmail": self.recipient_email,
            "recipientName": self.recipient_name,
            "scheduledFor": self.scheduled_for,
            "status": self.status.value,
            "attempts": self.attempts,
            "metadata": self.metadata,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        optional = {
            "role": self.role.value if self.role else None,
            "lastError": self.last_error,
            "resendEmailId": self.resend_email_id,
            "queueMessageId": self.queue_message_id,
            "resendOf": self.resend_of,
        }
        record.update({k: v for k, v in optional.items() if v is not None})
        return record

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "EmailJob":
        role = data.get("role")
        return cls(
            id=data["id"],
            batch_id=data.get("batchId"),
            session_id=data.get("sessionId"),
            type=EmailJobType(data["type"]),
            recipient_email=data["recipientEmail"],
            recipient_name=data.get("recipientName") or "",
            scheduled_for=data["scheduledFor"],
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            role=RecipientRole(role) if role else None,
            last_error=data.get("lastError"),
            resend_email_id=data.get("resendEmailId"),
            queue_message_id=data.get("queueMessageId") or data.get("qstashMessageId"),
            resend_of=data.get("resendOf"),
            metadata=data.get("metadata") or {},
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass(slots=True)
class EmailBatch:
    """A group of jobs of one type created together for a session."""

    batch_id: str
    session_id: str | None
    session_name: str
    type: EmailJobType
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    status: BatchStatus = BatchStatus.PENDING
    created_by: str | None = None
    created_at: str = ""
    updated_at: str = ""
    # Ordered job ids, loaded from the batch's job list key
    jobs: list[str] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.batch_id,
            "sessionId": self.session_id,
            "sessionName": self.session_name,
            "type": self.type.value,
            "totalJobs": self.total,
            "completedJobs": self.completed,
            "failedJobs": self.failed,
            "cancelledJobs": self.cancelled,
            "status": self.status.value,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any], jobs: list[str] | None = None) -> "EmailBatch":
        return cls(
            batch_id=data["id"],
            session_id=data.get("sessionId"),
            session_name=data.get("sessionName") or "",
            type=EmailJobType(data["type"]),
            total=int(data.get("totalJobs", 0)),
            completed=int(data.get("completedJobs", 0)),
            failed=int(data.get("failedJobs", 0)),
            cancelled=int(data.get("cancelledJobs", 0)),
            status=BatchStatus(data.get("status", BatchStatus.PENDING.value)),
            created_by=data.get("createdBy"),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            jobs=list(jobs or []),
        )


@dataclass(slots=True)
class JobProgress:
    """Batch counters plus derived status, optionally with the jobs."""

    batch_id: str
    session_id: str | None
    session_name: str
    type: EmailJobType
    total: int
    completed: int
    failed: int
    cancelled: int
    status: BatchStatus
    created_at: str = ""
    updated_at: str = ""
    jobs: list[EmailJob] | None = None

    @classmethod
    def from_batch(cls, batch: EmailBatch, jobs: list[EmailJob] | None = None) -> "JobProgress":
        return cls(
            batch_id=batch.batch_id,
            session_id=batch.session_id,
            session_name=batch.session_name,
            type=batch.type,
            total=batch.total,
            completed=batch.completed,
            failed=batch.failed,
            cancelled=batch.cancelled,
            status=batch.status,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
            jobs=jobs,
        )

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_BATCH_STATUSES


@dataclass(slots=True)
class DeadLetterEntry:
    job: EmailJob
    reason: str
    added_at: str
    reviewed: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "job": self.job.to_record(),
            "reason": self.reason,
            "addedAt": self.added_at,
            "reviewed": self.reviewed,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "DeadLetterEntry":
        return cls(
            job=EmailJob.from_record(data["job"]),
            reason=data.get("reason", ""),
            added_at=data.get("addedAt", ""),
            reviewed=bool(data.get("reviewed", False)),
        )
