from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.api.deps import get_rate_limiter, session_dependency
from apihub.ratelimit import SubmissionRateLimiter

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str = "0.1.0"


class ReadinessResponse(BaseModel):
    status: str
    database: str
    redis: str


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy")


@router.get("/ready", response_model=ReadinessResponse, status_code=status.HTTP_200_OK)
async def readiness_check(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    limiter: SubmissionRateLimiter = Depends(get_rate_limiter),  # noqa: B008
) -> ReadinessResponse:
    """Readiness check with database and Redis connectivity."""
    db_status = "unknown"
    redis_status = "unknown"

    try:
        result = await session.execute(text("SELECT 1"))
        if result.scalar() == 1:
            db_status = "connected"
    except (SQLAlchemyError, ConnectionError, TimeoutError, OSError):
        db_status = "disconnected"

    try:
        if await limiter.ping():
            redis_status = "connected"
    except (RedisError, ConnectionError, TimeoutError, OSError):
        redis_status = "disconnected"

    overall_status = (
        "ready" if db_status == "connected" and redis_status == "connected" else "not_ready"
    )
    return ReadinessResponse(status=overall_status, database=db_status, redis=redis_status)
