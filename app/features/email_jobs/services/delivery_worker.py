"""
Delivery worker.

Handles the message QStash posts back at delivery time: claims each job,
renders its email, sends through Resend and records the outcome. A batch
payload is sent with a single provider call (chunked by the client) and
results are matched to jobs by position.

Also handles the queue's success and failure callbacks.
"""

import asyncio
import base64
import binascii
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from app.config import Settings
from app.features.email_jobs.domain.errors import InvalidTransitionError, JobNotFoundError
from app.features.email_jobs.domain.models import EmailJob, JobStatus, utc_now
from app.features.email_jobs.domain.payloads import (
    BatchDelivery,
    DeliveryPayload,
    DeliveryRecipient,
    PayloadError,
    parse_delivery_payload,
)
from app.features.email_jobs.domain.state_machine import JobEvent
from app.features.email_jobs.repository.job_store import JobStore
from app.features.email_jobs.services.templates import (
    RenderedEmail,
    apply_delivery_overrides,
    render,
)
from app.infrastructure.observability.logging import get_logger
from app.services.resend_client import (
    MISSING_ID_ERROR,
    MailProviderError,
    OutboundEmail,
    ResendClient,
    SendResult,
)

logger = get_logger(__name__)

DISABLED_ERROR = "Email sending is disabled (mail provider not configured)"
QUEUE_EXHAUSTED_ERROR = "Queue delivery retries exhausted"


@dataclass(slots=True)
class DeliveryOutcome:
    job_id: str
    email_id: str | None = None
    error: str | None = None
    skipped: bool = False

    def to_record(self) -> dict:
        record = {"jobId": self.job_id, "emailId": self.email_id, "error": self.error}
        if self.skipped:
            record["skipped"] = True
        return record


@dataclass(slots=True)
class DeliveryReport:
    is_batch: bool
    results: list[DeliveryOutcome] = field(default_factory=list)
    disabled: bool = False

    @property
    def success(self) -> bool:
        return not self.disabled and all(r.error is None or r.skipped for r in self.results)

    def to_record(self) -> dict:
        record = {
            "success": self.success,
            "isBatch": self.is_batch,
            "results": [r.to_record() for r in self.results],
        }
        if self.disabled:
            record["disabled"] = True
        return record


def _decode_b64_json(value) -> dict | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        decoded = json.loads(base64.b64decode(value))
    except (binascii.Error, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


class DeliveryWorker:
    def __init__(
        self,
        store: JobStore,
        mailer: ResendClient,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.mailer = mailer
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    async def _complete(self, job_id: str, email_id: str) -> DeliveryOutcome:
        try:
            await self.store.apply(job_id, JobEvent.SUCCEED, provider_id=email_id)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning("Could not record delivery", job_id=job_id, email_id=email_id, error=str(e))
        return DeliveryOutcome(job_id=job_id, email_id=email_id)

    async def _fail(self, job_id: str, error: str) -> DeliveryOutcome:
        try:
            job = await self.store.apply(job_id, JobEvent.FAIL, error=error)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning("Could not record delivery failure", job_id=job_id, error=str(e))
            return DeliveryOutcome(job_id=job_id, error=error)

        if job.attempts >= self.settings.MAX_DELIVERY_ATTEMPTS:
            await self.store.add_dead_letter(job, error)
        return DeliveryOutcome(job_id=job_id, error=error)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _claim(
        self, recipients: list[DeliveryRecipient]
    ) -> tuple[list[tuple[DeliveryRecipient, EmailJob]], list[DeliveryOutcome]]:
        """Move each job scheduled -> processing; anything else is skipped."""
        claimed, skipped = [], []
        for recipient in recipients:
            try:
                job = await self.store.apply(recipient.job_id, JobEvent.START, now=self.clock())
                claimed.append((recipient, job))
            except InvalidTransitionError as e:
                logger.info("Skipping job that cannot be claimed", job_id=recipient.job_id, status=e.status)
                skipped.append(
                    DeliveryOutcome(job_id=recipient.job_id, error=f"Job is {e.status}", skipped=True)
                )
            except JobNotFoundError:
                logger.warning("Skipping unknown job", job_id=recipient.job_id)
                skipped.append(DeliveryOutcome(job_id=recipient.job_id, error="Job not found", skipped=True))
        return claimed, skipped

    def _render_one(self, payload: DeliveryPayload, recipient: DeliveryRecipient) -> RenderedEmail:
        metadata = {**payload.metadata, **(recipient.metadata or {})}
        return render(payload.type, recipient, payload.session_id, metadata, self.settings.app_url())

    def _outbound(self, recipient: DeliveryRecipient, rendered: RenderedEmail) -> OutboundEmail:
        to, subject = apply_delivery_overrides(
            rendered,
            recipient.to,
            subject_prefix=self.settings.EMAIL_SUBJECT_PREFIX,
            test_mode=self.settings.EMAIL_TEST_MODE,
            test_recipient=self.settings.EMAIL_TEST_RECIPIENT,
        )
        return OutboundEmail(
            from_address=self.mailer.from_address,
            to=to,
            subject=subject,
            html=rendered.html,
            headers={"X-Entity-Ref-ID": recipient.job_id},
        )

    async def _send(
        self,
        payload: DeliveryPayload,
        claimed: list[tuple[DeliveryRecipient, EmailJob]],
        results: dict[str, SendResult],
    ) -> None:
        """Render and send; fills `results` per job id without touching the store."""
        rendered = await asyncio.gather(
            *(asyncio.to_thread(self._render_one, payload, recipient) for recipient, _ in claimed),
            return_exceptions=True,
        )

        sendable: list[tuple[DeliveryRecipient, OutboundEmail]] = []
        for (recipient, _), result in zip(claimed, rendered):
            if isinstance(result, Exception):
                logger.error("Email render failed", job_id=recipient.job_id, type=payload.type.value, error=str(result))
                results[recipient.job_id] = SendResult(error=f"Template rendering failed: {result}")
            else:
                sendable.append((recipient, self._outbound(recipient, result)))

        if not sendable:
            return

        try:
            if isinstance(payload, BatchDelivery):
                sent = await self.mailer.send_batch([email for _, email in sendable])
            else:
                sent = [SendResult(email_id=await self.mailer.send(sendable[0][1]))]
        except MailProviderError as e:
            logger.error("Mail provider send failed", job_count=len(sendable), error=str(e))
            for recipient, _ in sendable:
                results[recipient.job_id] = SendResult(error=str(e))
            return

        for index, (recipient, _) in enumerate(sendable):
            results[recipient.job_id] = sent[index] if index < len(sent) else SendResult(error=MISSING_ID_ERROR)

    async def process(self, payload: DeliveryPayload) -> DeliveryReport:
        """
        Deliver every job in the payload and record each outcome.

        WORKER_MAX_DURATION_SECONDS bounds rendering and sending only; the
        outcomes are always written, and anything not sent by the deadline
        is failed.
        """
        report = DeliveryReport(is_batch=isinstance(payload, BatchDelivery))
        claimed, skipped = await self._claim(payload.recipients)
        report.results.extend(skipped)
        if not claimed:
            return report

        if not self.mailer.configured:
            logger.warning("Mail provider not configured, failing jobs", job_count=len(claimed))
            report.disabled = True
            for recipient, _ in claimed:
                report.results.append(await self._fail(recipient.job_id, DISABLED_ERROR))
            return report

        results: dict[str, SendResult] = {}
        timeout = self.settings.WORKER_MAX_DURATION_SECONDS
        try:
            async with asyncio.timeout(timeout):
                await self._send(payload, claimed, results)
        except TimeoutError:
            logger.error(
                "Delivery timed out",
                timeout_seconds=timeout,
                finished=len(results),
                remaining=len(claimed) - len(results),
            )

        timed_out = SendResult(error=f"Delivery timed out after {timeout:g}s")
        for recipient, _ in claimed:
            result = results.get(recipient.job_id, timed_out)
            if result.ok:
                report.results.append(await self._complete(recipient.job_id, result.email_id))
            else:
                report.results.append(await self._fail(recipient.job_id, result.error or MISSING_ID_ERROR))

        logger.info(
            "Delivery finished",
            type=payload.type.value,
            is_batch=report.is_batch,
            sent=sum(1 for r in report.results if r.email_id),
            failed=sum(1 for r in report.results if r.error and not r.skipped),
            skipped=len(skipped),
        )
        return report

    async def process_message(self, body: dict) -> DeliveryReport:
        """
        Raises:
            PayloadError: if the body is not a delivery payload
        """
        return await self.process(parse_delivery_payload(body))

    # ------------------------------------------------------------------
    # Queue callbacks
    # ------------------------------------------------------------------

    async def handle_callback(self, callback: dict) -> dict:
        """
        Success callback: reconcile any job still `processing` using the
        results the worker reported in its response body.
        """
        response = _decode_b64_json(callback.get("body")) or {}
        reconciled = 0
        for item in response.get("results") or []:
            job_id = item.get("jobId") if isinstance(item, dict) else None
            if not job_id:
                continue
            job = await self.store.get_job(job_id)
            if job is None or job.status is not JobStatus.PROCESSING:
                continue
            if item.get("emailId"):
                await self._complete(job_id, item["emailId"])
            else:
                await self._fail(job_id, item.get("error") or "Delivery result missing")
            reconciled += 1

        logger.info("Queue callback handled", status=callback.get("status"), reconciled=reconciled)
        return {"reconciled": reconciled}

    async def handle_failure(self, callback: dict) -> dict:
        """
        Failure callback: the queue gave up on a message. Every job it
        carried that is still live is failed and sent to the dead-letter
        queue. Jobs that already finished, or that a retry has since handed
        to a newer message, are left alone.
        """
        source = _decode_b64_json(callback.get("sourceBody"))
        if source is None:
            logger.warning("Failure callback without a decodable source body")
            return {"failed": 0, "deadLettered": 0}

        try:
            payload = parse_delivery_payload(source)
        except PayloadError as e:
            logger.warning("Failure callback carried an invalid payload", error=str(e))
            return {"failed": 0, "deadLettered": 0}

        reason = QUEUE_EXHAUSTED_ERROR
        if callback.get("status"):
            reason = f"{QUEUE_EXHAUSTED_ERROR} (last HTTP status {callback['status']})"
        source_message_id = callback.get("sourceMessageId")

        failed = dead_lettered = 0
        for recipient in payload.recipients:
            job = await self.store.get_job(recipient.job_id)
            if job is None or not job.is_live:
                continue
            if source_message_id and job.queue_message_id and job.queue_message_id != source_message_id:
                logger.info(
                    "Job carried by a newer queue message",
                    job_id=job.id,
                    message_id=job.queue_message_id,
                    source_message_id=source_message_id,
                )
                continue
            try:
                job = await self.store.apply(job.id, JobEvent.FAIL, error=reason)
            except (InvalidTransitionError, JobNotFoundError) as e:
                logger.info("Job changed before the failure callback", job_id=job.id, error=str(e))
                continue
            failed += 1
            await self.store.add_dead_letter(job, reason)
            dead_lettered += 1

        logger.warning(
            "Queue failure callback handled",
            batch_id=getattr(payload, "batch_id", None),
            failed=failed,
            dead_lettered=dead_lettered,
        )
        return {"failed": failed, "deadLettered": dead_lettered}
