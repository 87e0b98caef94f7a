"""
RequestContext middleware.

Gives every request an id, resolves the client IP and binds both to the
structlog context so that every log line written while handling the request
(including job and batch events) carries them. The id is echoed back in the
X-Request-ID header; an incoming X-Request-ID (QStash forwards one) is
reused.
"""

import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import Settings
from app.infrastructure.observability.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    log_request,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Adds to request.state:
    - request_id: id for tracing this request
    - ip_address: client IP address
    """

    def __init__(self, app, settings: Settings):
        super().__init__(app)
        self.settings = settings

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        ip_address = self._extract_client_ip(request)
        request.state.request_id = request_id
        request.state.ip_address = ip_address

        clear_request_context()
        bind_request_context(request_id=request_id)

        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        log_request(
            request.method,
            request.url.path,
            response.status_code,
            round((time.time() - start_time) * 1000, 2),
            request_id=request_id,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _extract_client_ip(self, request: Request) -> str | None:
        """
        Trust X-Forwarded-For only when enabled and the direct peer is one of
        the configured proxies; otherwise use the connection address.
        """
        direct = request.client.host if request.client else None
        if not self.settings.TRUST_X_FORWARDED_FOR or direct not in self.settings.TRUSTED_PROXY_IPS:
            return direct

        forwarded_for = request.headers.get("x-forwarded-for")
        if not forwarded_for:
            return direct
        # "client, proxy1, proxy2"
        return forwarded_for.split(",")[0].strip()
