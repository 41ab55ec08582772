import pytest

from apihub.core.errors import RateLimitedError
from apihub.ratelimit import SubmissionRateLimiter


class ScriptedRedis:
    """Returns canned fixed-window replies and records the keys it was asked about."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []
        self.closed = False

    async def eval(self, script, numkeys, *args):
        self.calls.append(args)
        return self.replies.pop(0)

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_allowed_submission_returns_usage():
    redis = ScriptedRedis([[1, 3, 42]])
    limiter = SubmissionRateLimiter("redis://unused", limit=5, window_seconds=60, redis_client=redis)

    assert await limiter.check("alice") == 3
    assert redis.calls == [("apihub:submissions:alice", 60, 5)]


@pytest.mark.asyncio
async def test_exhausted_window_raises():
    redis = ScriptedRedis([[0, 6, 0]])
    limiter = SubmissionRateLimiter("redis://unused", limit=5, redis_client=redis)

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.check("")

    assert exc_info.value.status == 429
    assert exc_info.value.params == {"retryAfter": 1, "limit": 5}
    assert redis.calls[0][0] == "apihub:submissions:anonymous"


@pytest.mark.asyncio
async def test_ping_and_close():
    redis = ScriptedRedis([])
    limiter = SubmissionRateLimiter("redis://unused", redis_client=redis)

    assert await limiter.ping() is True
    await limiter.close()
    assert redis.closed is True
