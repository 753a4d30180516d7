"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter

from settlement_engine.config import settings
from settlement_engine.db.pool import db_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "settlement-engine"}


@router.get("/readyz")
async def readyz():
    """Readiness check covering the database pool and required configuration."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if "warnings" in db_health:
            checks["database"]["warnings"] = db_health["warnings"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    config_issues = []
    if not settings.PAYMENT_PROCESSOR_API_KEY:
        config_issues.append("PAYMENT_PROCESSOR_API_KEY not set")
    for source in ("meeting", "email_scan", "feedback"):
        if not settings.webhook_secret(source):
            config_issues.append(f"{source} webhook secret not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
