"""
Health Check Endpoints

Liveness and readiness checks. Redis only backs the conversation locks,
which fall back to in-process locks, so only the database decides
readiness.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from appointment_bot.config import settings
from appointment_bot.infra.database import check_db_health
from appointment_bot.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float] = None


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness check",
    description="Checks database and Redis connectivity. Returns 503 if the database is unavailable.",
    responses={
        200: {"description": "Database is ready (Redis may be degraded)"},
        503: {"description": "Database is unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness check.

    Checks:
    - Database connectivity (required)
    - Redis connectivity (reported as "degraded" when down)
    """
    checks = {}

    try:
        db_ok = await check_db_health()
    except Exception as e:
        db_ok = False
        logger.error(f"Readiness check: Database error - {e}")
    checks["database"] = "ok" if db_ok else "failed"
    if not db_ok:
        logger.warning("Readiness check: Database unhealthy")

    try:
        redis_ok = await check_redis_health()
    except Exception as e:
        redis_ok = False
        logger.error(f"Readiness check: Redis error - {e}")
    checks["redis"] = "ok" if redis_ok else "degraded"

    response = ReadyResponse(
        status="ready" if db_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not db_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response
