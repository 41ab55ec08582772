from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.config import Settings, get_settings
from apihub.db.session import get_session
from apihub.ratelimit import SubmissionRateLimiter


async def session_dependency() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


def principal_dependency(
    principal_id: str | None = Header(default=None, alias="X-Principal-Id"),
) -> str:
    return principal_id or "anonymous"


_rate_limiter: SubmissionRateLimiter | None = None


def get_rate_limiter(settings: Settings = Depends(get_settings)) -> SubmissionRateLimiter:  # noqa: B008
    global _rate_limiter

    if _rate_limiter is None:
        _rate_limiter = SubmissionRateLimiter.from_settings(settings)
    return _rate_limiter


async def close_rate_limiter() -> None:
    global _rate_limiter

    if _rate_limiter is not None:
        await _rate_limiter.close()
    _rate_limiter = None
