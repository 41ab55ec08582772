from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from apihub.config import Settings
from apihub.core.errors import RateLimitedError

logger = structlog.get_logger()

# Fixed window per key. Returns {allowed, used, seconds until the window resets}.
_SUBMISSION_WINDOW_SCRIPT = """
local used = redis.call('INCR', KEYS[1])
if used == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if used > tonumber(ARGV[2]) then
    return {0, used, ttl}
end
return {1, used, ttl}
"""


class SubmissionRateLimiter:
    """Caps build submissions per principal within a fixed Redis window."""

    key_prefix = "apihub:submissions:"

    def __init__(
        self,
        redis_url: str,
        *,
        limit: int = 100,
        window_seconds: int = 60,
        max_connections: int = 50,
        redis_client: aioredis.Redis | None = None,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._pool: aioredis.ConnectionPool | None = None
        self._client: aioredis.Redis | None = redis_client
        if redis_client is None:
            self._pool = aioredis.ConnectionPool.from_url(
                redis_url, max_connections=max_connections, decode_responses=True
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SubmissionRateLimiter":
        return cls(
            settings.redis_url,
            limit=settings.submission_rate_limit,
            window_seconds=settings.submission_rate_window_sec,
            max_connections=settings.redis_max_connections,
        )

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis(connection_pool=self._pool)
        return self._client

    async def check(self, principal: str) -> int:
        """Count one submission for ``principal``; returns how many the window has used."""
        key = f"{self.key_prefix}{principal or 'anonymous'}"
        allowed, used, ttl = await self._get_client().eval(
            _SUBMISSION_WINDOW_SCRIPT, 1, key, self.window_seconds, self.limit
        )
        if not int(allowed):
            logger.warning("rate_limit_exceeded", principal=principal, used=int(used), max=self.limit)
            raise RateLimitedError(
                "Too many build submissions; retry in $retryAfter seconds",
                params={"retryAfter": max(int(ttl), 1), "limit": self.limit},
            )
        return int(used)

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
