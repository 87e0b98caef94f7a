"""
BaseQL GraphQL client.

BaseQL exposes the program's Airtable base (sessions, teams, tasks) over
GraphQL. The API key is sent as-is in the Authorization header.
"""

from typing import Any

import httpx

from app.config import Settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds


class SessionSourceError(Exception):
    """Raised when session or task records cannot be fetched."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BaseQLClient:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))

    @property
    def configured(self) -> bool:
        return bool(self.settings.BASEQL_API_URL and self.settings.BASEQL_API_KEY)

    async def close(self) -> None:
        await self._client.aclose()

    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.configured:
            raise SessionSourceError("BaseQL not configured. Set BASEQL_API_URL and BASEQL_API_KEY.")

        try:
            response = await self._client.post(
                self.settings.BASEQL_API_URL,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": self.settings.BASEQL_API_KEY,
                },
                json={"query": query, "variables": variables or {}},
            )
        except httpx.RequestError as e:
            logger.error("BaseQL request failed", error=str(e))
            raise SessionSourceError(f"BaseQL request failed: {e}") from e

        if not response.is_success:
            logger.error("BaseQL HTTP error", status_code=response.status_code, body=response.text[:200])
            raise SessionSourceError(
                f"BaseQL query failed: {response.status_code}", status_code=response.status_code
            )

        try:
            result = response.json()
        except ValueError as e:
            raise SessionSourceError(f"Invalid BaseQL response: {e}") from e

        if result.get("errors"):
            message = result["errors"][0].get("message") or "GraphQL query error"
            logger.error("BaseQL GraphQL errors", error=message, error_count=len(result["errors"]))
            raise SessionSourceError(message)

        return result.get("data") or {}
