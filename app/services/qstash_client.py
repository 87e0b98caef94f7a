"""
QStash REST client.

Publishes delayed HTTP messages (single and batched) and cancels pending
ones. Each message carries retry, callback and flow-control headers so that
delivery to the worker is rate limited on the queue side.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import Settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class QueueClientError(Exception):
    """Raised when QStash rejects or cannot accept a request."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


@dataclass(slots=True)
class QueueMessage:
    destination: str
    body: dict[str, Any]
    delay_seconds: int = 0
    callback: str | None = None
    failure_callback: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PublishResult:
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return bool(self.message_id) and not self.error


class QStashClient:
    """Thin async wrapper over the QStash v2 API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.base_url = settings.QSTASH_URL.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))

    @property
    def configured(self) -> bool:
        return self.settings.queue_configured()

    async def close(self) -> None:
        await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if not self.settings.QSTASH_TOKEN:
            raise QueueClientError("QStash is not configured (QSTASH_TOKEN missing)")
        return {"Authorization": f"Bearer {self.settings.QSTASH_TOKEN}"}

    def _message_headers(self, message: QueueMessage) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Upstash-Retries": str(self.settings.QSTASH_RETRIES),
            "Upstash-Flow-Control-Key": self.settings.QSTASH_FLOW_CONTROL_KEY,
            "Upstash-Flow-Control-Value": self.settings.flow_control_value(),
        }
        if message.delay_seconds > 0:
            headers["Upstash-Delay"] = f"{message.delay_seconds}s"
        if message.callback:
            headers["Upstash-Callback"] = message.callback
        if message.failure_callback:
            headers["Upstash-Failure-Callback"] = message.failure_callback
        headers.update(message.headers)
        return headers

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "QStash retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise QueueClientError(f"QStash request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "QStash request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise QueueClientError("QStash retry loop exhausted")

    def _handle_response(self, response: httpx.Response, operation: str) -> Any:
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                raise QueueClientError(f"Invalid QStash {operation} response: {e}") from e

        try:
            data = response.json()
            message = data.get("error") if isinstance(data, dict) else None
        except ValueError:
            data, message = response.text, None

        logger.error(
            f"QStash {operation} failed",
            status_code=response.status_code,
            error=message or response.text[:200],
        )
        raise QueueClientError(
            message or f"QStash {operation} failed with HTTP {response.status_code}",
            status_code=response.status_code,
            response_data=data,
        )

    async def publish(self, message: QueueMessage) -> str:
        """Publish one message; returns the QStash message id."""
        headers = {**self._auth_headers(), **self._message_headers(message)}
        response = await self._request_with_retry(
            "POST",
            f"{self.base_url}/v2/publish/{message.destination}",
            headers=headers,
            content=json.dumps(message.body),
        )
        data = self._handle_response(response, "publish")
        message_id = data.get("messageId") if isinstance(data, dict) else None
        if not message_id:
            raise QueueClientError("QStash publish returned no messageId", response_data=data)

        logger.info(
            "QStash message published",
            message_id=message_id,
            delay_seconds=message.delay_seconds,
        )
        return message_id

    async def publish_batch(self, messages: list[QueueMessage]) -> list[PublishResult]:
        """
        Publish several messages in one call.

        Results are positional: result[i] belongs to messages[i]. A request-level
        failure raises QueueClientError; per-message rejections come back as
        PublishResult.error.
        """
        if not messages:
            return []

        payload = [
            {
                "destination": m.destination,
                "headers": self._message_headers(m),
                "body": json.dumps(m.body),
            }
            for m in messages
        ]
        response = await self._request_with_retry(
            "POST",
            f"{self.base_url}/v2/batch",
            headers={**self._auth_headers(), "Content-Type": "application/json"},
            content=json.dumps(payload),
        )
        data = self._handle_response(response, "batch publish")
        if not isinstance(data, list):
            raise QueueClientError("QStash batch response is not a list", response_data=data)

        results = []
        for i in range(len(messages)):
            item = data[i] if i < len(data) else {}
            if isinstance(item, list):
                # URL-group destinations answer with one entry per endpoint
                item = item[0] if item else {}
            results.append(
                PublishResult(
                    message_id=item.get("messageId"),
                    error=item.get("error") or (None if item.get("messageId") else "No messageId returned"),
                )
            )

        logger.info(
            "QStash batch published",
            message_count=len(messages),
            failed=sum(1 for r in results if not r.ok),
        )
        return results

    async def cancel(self, message_id: str) -> bool:
        """Cancel a not-yet-delivered message. Returns False if it was already gone."""
        response = await self._request_with_retry(
            "DELETE",
            f"{self.base_url}/v2/messages/{message_id}",
            headers=self._auth_headers(),
        )
        if response.status_code == 404:
            return False
        self._handle_response(response, "cancel")
        logger.info("QStash message cancelled", message_id=message_id)
        return True
