"""
Health endpoints.

/livez and /readyz are unauthenticated probes for the orchestrator, limited
per client IP. POST /api/v1/health is the tenant-facing connection check.
"""
import time
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from perf_hub_server.database import ping
from perf_hub_server.db_models import Tenant
from perf_hub_server.errors import success_body
from perf_hub_server.gate import current_tenant
from perf_hub_server.logging_config import get_logger
from perf_hub_server.quota import TOKEN_LIMIT_UNIT
from perf_hub_server.rate_limiting import ip_limit_value, ip_limiter

logger = get_logger("health")

router = APIRouter(tags=["health"])


def check_database(request: Request) -> Dict[str, Any]:
    """Check database connectivity"""
    start = time.monotonic()
    try:
        ping(request.app.state.engine)
    except SQLAlchemyError as e:
        logger.error("database_health_check_failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy",
        "response_time_ms": round((time.monotonic() - start) * 1000, 2),
    }


def check_settings(request: Request) -> Dict[str, Any]:
    loaded = request.app.state.settings_store.is_loaded
    return {"status": "healthy" if loaded else "unhealthy"}


@router.get("/livez")
@ip_limiter.limit(ip_limit_value)
def liveness_check(request: Request):
    """Returns 200 while the process is serving requests."""
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat(),
        "service": request.app.title,
    }


@router.get("/readyz")
@ip_limiter.limit(ip_limit_value)
def readiness_check(request: Request):
    """
    Readiness check endpoint.
    Returns 200 only if the database answers and runtime settings are loaded.
    """
    checks = {
        "database": check_database(request),
        "settings": check_settings(request),
    }
    is_ready = all(check["status"] == "healthy" for check in checks.values())
    if not is_ready:
        logger.warning("readiness_check_failed", checks=checks)

    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "ready": is_ready,
            "timestamp": datetime.utcnow().isoformat(),
            "checks": checks,
        },
    )


@router.post("/api/v1/health")
def tenant_health(request: Request, tenant: Tenant = Depends(current_tenant)):
    """Connection check for a registered site: confirms the key and reports its limits."""
    return success_body({
        "site_name": tenant.site_name,
        "site_url": tenant.site_url,
        "features": {
            "ai": tenant.ai_enabled,
            "performance": tenant.performance_enabled,
        },
        "limits": {
            "ai_monthly_tokens": tenant.ai_monthly_limit * TOKEN_LIMIT_UNIT,
            "tests_per_day": tenant.test_daily_limit,
        },
        "license_expires_at": tenant.expires_at.isoformat() if tenant.expires_at else None,
        "hub_version": request.app.version,
        "timestamp": datetime.utcnow().isoformat(),
    })
