# app/routes/health.py
"""
Health check endpoints: liveness, and readiness with Redis and
configuration checks.
"""

import time

from fastapi import APIRouter, Depends

from app.config import Settings
from app.dependencies import get_redis, get_settings
from app.services.redis_client import FastRedisClient

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "email-jobs"}


@router.get("/readyz")
async def readyz(
    redis: FastRedisClient = Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    """
    Readiness: Redis must answer; missing queue or mail configuration is
    reported but does not fail the check (those features run disabled).
    """
    checks = {}

    t0 = time.time()
    redis_ok = await redis.ping()
    checks["redis"] = {
        "ok": redis_ok,
        "latency_ms": round((time.time() - t0) * 1000, 1),
        "connection_type": "native_pooled",
    }

    issues = []
    if not settings.UPSTASH_REDIS_REST_URL:
        issues.append("UPSTASH_REDIS_REST_URL not set")
    warnings = []
    if not settings.queue_configured():
        warnings.append("QSTASH_TOKEN not set - scheduling disabled")
    if not settings.signing_keys():
        warnings.append("QStash signing keys not set - signed deliveries will be rejected")
    if not settings.mail_configured():
        warnings.append("RESEND_API_KEY not set - sending disabled")
    if not settings.CRON_SECRET:
        warnings.append("CRON_SECRET not set - cron endpoints refuse all calls")

    checks["configuration"] = {
        "ok": not issues,
        "issues": issues or None,
        "warnings": warnings or None,
        "environment": settings.environment,
        "test_mode": settings.EMAIL_TEST_MODE,
    }

    overall_ok = redis_ok and not issues
    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
