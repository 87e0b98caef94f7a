"""
Resend email API client.

Wraps the single-send and batch-send endpoints. Batch results are returned
positionally as SendResult entries; Resend preserves input order in its
response.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import Settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 20  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_BATCH_SIZE = 100  # Resend batch endpoint limit
MISSING_ID_ERROR = "No email ID returned"


class MailProviderError(Exception):
    """Raised when Resend rejects a send or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_name: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_name = error_name


@dataclass(slots=True)
class OutboundEmail:
    from_address: str
    to: str
    subject: str
    html: str
    headers: dict[str, str] = field(default_factory=dict)

    def to_request(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "from": self.from_address,
            "to": [self.to],
            "subject": self.subject,
            "html": self.html,
        }
        if self.headers:
            body["headers"] = self.headers
        return body


@dataclass(slots=True)
class SendResult:
    email_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return bool(self.email_id) and not self.error


class ResendClient:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.base_url = settings.RESEND_API_URL.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))

    @property
    def configured(self) -> bool:
        return self.settings.mail_configured()

    @property
    def from_address(self) -> str:
        return self.settings.RESEND_FROM_EMAIL

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.settings.RESEND_API_KEY:
            raise MailProviderError("Email sending is disabled (RESEND_API_KEY missing)")
        return {
            "Authorization": f"Bearer {self.settings.RESEND_API_KEY}",
            "Content-Type": "application/json",
        }

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Resend retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise MailProviderError(f"Resend request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug("Resend request error, retrying", attempt=attempt, error=str(e))
                await asyncio.sleep(backoff)
        raise MailProviderError("Resend retry loop exhausted")

    def _handle_response(self, response: httpx.Response, operation: str) -> Any:
        try:
            data = response.json() if response.text else {}
        except ValueError as e:
            if response.is_success:
                raise MailProviderError(f"Invalid Resend {operation} response: {e}") from e
            data = {}

        if response.is_success:
            return data

        message = data.get("message") if isinstance(data, dict) else None
        name = data.get("name") if isinstance(data, dict) else None
        logger.error(
            f"Resend {operation} failed",
            status_code=response.status_code,
            error_name=name,
            error=message,
        )
        raise MailProviderError(
            message or f"Resend {operation} failed with HTTP {response.status_code}",
            status_code=response.status_code,
            error_name=name,
        )

    async def send(self, email: OutboundEmail) -> str:
        """Send one email; returns the Resend email id."""
        response = await self._request_with_retry(
            "POST", f"{self.base_url}/emails", headers=self._headers(), json=email.to_request()
        )
        data = self._handle_response(response, "send")
        email_id = data.get("id")
        if not email_id:
            raise MailProviderError(MISSING_ID_ERROR)
        return email_id

    async def send_batch(self, emails: list[OutboundEmail]) -> list[SendResult]:
        """
        Send emails through the batch endpoint, MAX_BATCH_SIZE at a time.

        Returns one SendResult per input email in order. A chunk that Resend
        rejects marks only its own positions as failed; ids from chunks that
        went through are kept.

        Raises:
            MailProviderError: if sending is not configured
        """
        headers = self._headers()
        results: list[SendResult] = []
        for start in range(0, len(emails), MAX_BATCH_SIZE):
            chunk = emails[start : start + MAX_BATCH_SIZE]
            try:
                response = await self._request_with_retry(
                    "POST",
                    f"{self.base_url}/emails/batch",
                    headers=headers,
                    json=[e.to_request() for e in chunk],
                )
                data = self._handle_response(response, "batch send")
            except MailProviderError as e:
                logger.warning("Resend batch chunk failed", offset=start, size=len(chunk), error=str(e))
                results.extend(SendResult(error=str(e)) for _ in chunk)
                continue

            # The API answers {"data": [...]}; accept a bare list too
            items = data.get("data") if isinstance(data, dict) else data
            items = items if isinstance(items, list) else []
            for i in range(len(chunk)):
                item = items[i] if i < len(items) else None
                email_id = item.get("id") if isinstance(item, dict) else None
                results.append(SendResult(email_id=email_id, error=None if email_id else MISSING_ID_ERROR))

        logger.info(
            "Resend batch sent",
            email_count=len(emails),
            failed=sum(1 for r in results if not r.ok),
        )
        return results
