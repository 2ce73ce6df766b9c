# app/routes/health.py
"""
Health check endpoints with database pool and job queue monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.infrastructure.job_queue import job_queue

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "availability-consensus"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check with all dependencies: database pool, Redis job queue,
    and required configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Redis (job queue) health check
    t0 = time.time()
    queue_health = await job_queue.health_check()
    checks["redis"] = {
        "ok": queue_health.get("healthy", False),
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "queued_jobs" in queue_health:
        checks["redis"]["queued_jobs"] = queue_health["queued_jobs"]
    if "error" in queue_health:
        checks["redis"]["error"] = queue_health["error"]
    overall_ok = overall_ok and checks["redis"]["ok"]

    # 2) Database pool health check
    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = db_health.get("healthy", False)
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"].update(db_health["pool_stats"])
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 3) Configuration checks
    config_issues = []
    if not settings.MAGIC_TOKEN_SECRET:
        config_issues.append("MAGIC_TOKEN_SECRET not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    for component, check in checks.items():
        log_health_check(component, check["ok"], check.get("latency_ms", 0.0), check.get("error"))

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
