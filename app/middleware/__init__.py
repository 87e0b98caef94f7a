"""
Middleware components for request processing.

- Request context (request ID, client IP, structlog context binding)
"""

from app.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
