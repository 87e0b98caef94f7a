"""
verify.py
---------
Purpose:
    Shared-secret bearer checks for the operator and cron endpoints.

Notes:
    - Cron routes always require `Authorization: Bearer <CRON_SECRET>`;
      with no secret configured they refuse every call.
    - Job and scheduling routes require `Bearer <ADMIN_API_TOKEN>` when the
      token is set, and are open otherwise (local development).
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import Settings
from app.dependencies import get_settings

_security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_bearer(credentials: HTTPAuthorizationCredentials | None, secret: str) -> None:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Missing bearer token")
    if not hmac.compare_digest(credentials.credentials.encode(), secret.encode()):
        raise _unauthorized("Invalid bearer token")


def cron_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.CRON_SECRET:
        raise _unauthorized("CRON_SECRET is not configured")
    verify_bearer(credentials, settings.CRON_SECRET)


def admin_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
    settings: Settings = Depends(get_settings),
) -> None:
    if settings.ADMIN_API_TOKEN:
        verify_bearer(credentials, settings.ADMIN_API_TOKEN)
