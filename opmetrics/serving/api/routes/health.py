"""
Health Check Endpoints

The order store is the only hard dependency. Redis and the exchange-rate
provider can fail without taking the dashboard down, so they only degrade
the reported status.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel
from redis.exceptions import RedisError

from opmetrics.config import get_settings
from opmetrics.database.connection import check_database_health
from opmetrics.serving.cache import get_redis, redis_available

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


def _session_factory(request: Request):
    service = getattr(request.app.state, "metrics_service", None)
    return service.session_factory if service is not None else None


async def _redis_check() -> Dict[str, Optional[str]]:
    if not redis_available():
        return {"status": "disabled"}
    try:
        await get_redis().ping()
    except (RedisError, OSError) as e:
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy"}


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Order store, shared rate cache and exchange-rate source."""
    settings = get_settings()
    checks: Dict[str, Any] = {
        "database": await check_database_health(_session_factory(request)),
        "redis": await _redis_check(),
    }

    service = getattr(request.app.state, "metrics_service", None)
    if service is not None:
        checks["exchange_rates"] = service.normalizer.status()

    if checks["database"]["status"] != "healthy":
        overall = "unhealthy"
    elif any(check.get("status") in ("unhealthy", "degraded") for check in checks.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, str]:
    """Ready once the metrics service is wired and the order store answers."""
    if getattr(request.app.state, "metrics_service", None) is None:
        response.status_code = 503
        return {"status": "not_ready", "reason": "starting"}

    db_health = await check_database_health(_session_factory(request))
    if db_health["status"] != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}

    return {"status": "ready"}
