"""
Payload types for the email jobs feature.

NotificationPayload is what the payload builder produces: one recipient, one
email type, a delivery time and the denormalised template data.

SingleDelivery and BatchDelivery are the two message bodies the delivery
queue posts back to the worker. They form a tagged union on `isBatch`;
`parse_delivery_payload` is the only place that looks at the tag.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import EmailJobType, RecipientRole


class PayloadError(ValueError):
    """The queue message body is not a valid delivery payload."""


@dataclass(slots=True)
class NotificationPayload:
    type: EmailJobType
    session_id: str | None
    session_name: str
    recipient_email: str
    recipient_name: str
    contact_id: str | None
    scheduled_for: datetime
    role: RecipientRole | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DeliveryRecipient:
    job_id: str
    to: str
    recipient_name: str
    role: RecipientRole | None = None
    # Per-recipient template data merged over the shared metadata (digests)
    metadata: dict[str, Any] | None = None

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "jobId": self.job_id,
            "to": self.to,
            "recipientName": self.recipient_name,
        }
        if self.role:
            record["role"] = self.role.value
        if self.metadata:
            record["metadata"] = self.metadata
        return record

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "DeliveryRecipient":
        try:
            role = data.get("role")
            return cls(
                job_id=data["jobId"],
                to=data["to"],
                recipient_name=data.get("recipientName") or "",
                role=RecipientRole(role) if role else None,
                metadata=data.get("metadata"),
            )
        except (KeyError, ValueError) as e:
            raise PayloadError(f"Invalid recipient entry: {e}") from e


@dataclass(slots=True)
class SingleDelivery:
    """Legacy one-job payload."""

    job_id: str
    session_id: str | None
    type: EmailJobType
    to: str
    recipient_name: str
    metadata: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None

    @property
    def recipients(self) -> list[DeliveryRecipient]:
        return [DeliveryRecipient(job_id=self.job_id, to=self.to, recipient_name=self.recipient_name)]

    def to_record(self) -> dict[str, Any]:
        return {
            "isBatch": False,
            "jobId": self.job_id,
            "batchId": self.batch_id,
            "sessionId": self.session_id,
            "type": self.type.value,
            "to": self.to,
            "recipientName": self.recipient_name,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class BatchDelivery:
    batch_id: str
    session_id: str | None
    type: EmailJobType
    scheduled_for: str
    recipients: list[DeliveryRecipient]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "isBatch": True,
            "batchId": self.batch_id,
            "sessionId": self.session_id,
            "type": self.type.value,
            "scheduledFor": self.scheduled_for,
            "recipients": [r.to_record() for r in self.recipients],
            "metadata": self.metadata,
        }


DeliveryPayload = SingleDelivery | BatchDelivery


def parse_delivery_payload(data: Any) -> DeliveryPayload:
    """Decode a queue message body into a SingleDelivery or BatchDelivery."""
    if not isinstance(data, dict):
        raise PayloadError("Payload must be a JSON object")

    try:
        job_type = EmailJobType(data["type"])
    except (KeyError, ValueError) as e:
        raise PayloadError(f"Unknown or missing email type: {data.get('type')!r}") from e

    metadata = data.get("metadata") or {}

    if data.get("isBatch"):
        recipients = data.get("recipients")
        if not isinstance(recipients, list) or not data.get("batchId"):
            raise PayloadError("Batch payload requires batchId and a recipients list")
        return BatchDelivery(
            batch_id=data["batchId"],
            session_id=data.get("sessionId"),
            type=job_type,
            scheduled_for=data.get("scheduledFor") or "",
            recipients=[DeliveryRecipient.from_record(r) for r in recipients],
            metadata=metadata,
        )

    if not data.get("jobId") or not data.get("to"):
        raise PayloadError("Single payload requires jobId and to")
    return SingleDelivery(
        job_id=data["jobId"],
        session_id=data.get("sessionId"),
        type=job_type,
        to=data["to"],
        recipient_name=data.get("recipientName") or "",
        metadata=metadata,
        batch_id=data.get("batchId"),
    )
