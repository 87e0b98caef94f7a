"""
QStash delivery endpoints.

    POST /qstash/worker    scheduled delivery (signed)
    POST /qstash/callback  delivery finished (signed)
    POST /qstash/failure   retries exhausted (signed)

Signatures are checked against the raw body before anything is parsed or
written.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.config import Settings
from app.dependencies import get_delivery_worker, get_receiver, get_settings
from app.features.email_jobs.domain.errors import JobStoreUnavailableError
from app.features.email_jobs.domain.payloads import PayloadError
from app.features.email_jobs.services.delivery_worker import DeliveryWorker
from app.infrastructure.observability.logging import bind_request_context, get_logger
from app.services.qstash_receiver import SIGNATURE_HEADER, QStashReceiver, SignatureVerificationError

logger = get_logger(__name__)

router = APIRouter(prefix="/qstash", tags=["qstash"])


async def verified_body(
    request: Request,
    receiver: QStashReceiver = Depends(get_receiver),
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Raw request body, after the QStash signature has been checked."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not signature:
        if settings.is_production:
            logger.warning("Rejected unsigned queue request", path=request.url.path)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature")
        logger.warning("Accepting unsigned queue request outside production", path=request.url.path)
        return body

    try:
        receiver.verify(signature, body, url=f"{settings.app_url()}{request.url.path}")
    except SignatureVerificationError as e:
        logger.warning("Rejected queue request with invalid signature", path=request.url.path, reason=e.reason)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature") from e
    return body


def _load_json(body: bytes) -> dict:
    try:
        data = json.loads(body or b"{}")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")
    return data


@router.post("/worker")
async def deliver(
    request: Request,
    body: bytes = Depends(verified_body),
    worker: DeliveryWorker = Depends(get_delivery_worker),
):
    """Send the emails carried by a queue message and record outcomes."""
    message_id = request.headers.get("upstash-message-id")
    if message_id:
        bind_request_context(queue_message_id=message_id)

    data = _load_json(body)
    try:
        report = await worker.process_message(data)
    except PayloadError as e:
        logger.error("Invalid delivery payload", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except JobStoreUnavailableError as e:
        logger.error("Job store unavailable during delivery", operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store temporarily unavailable"
        ) from e

    return report.to_record()


@router.post("/callback")
async def delivery_callback(
    body: bytes = Depends(verified_body),
    worker: DeliveryWorker = Depends(get_delivery_worker),
):
    """Reconcile jobs from the worker's reported results. Always 200."""
    try:
        result = await worker.handle_callback(_load_json(body))
        return {"success": True, **result}
    except Exception as e:
        logger.error("Queue callback handling failed", error=str(e), error_type=type(e).__name__)
        return {"success": False, "error": str(e)}


@router.post("/failure")
async def delivery_failure(
    body: bytes = Depends(verified_body),
    worker: DeliveryWorker = Depends(get_delivery_worker),
):
    """Fail and dead-letter the jobs of a message the queue gave up on. Always 200."""
    try:
        result = await worker.handle_failure(_load_json(body))
        return {"success": True, **result}
    except Exception as e:
        logger.error("Queue failure callback handling failed", error=str(e), error_type=type(e).__name__)
        return {"success": False, "error": str(e)}
