"""Rate limiter tests."""

import pytest

from flowpilot.config import FlowpilotConfig, RateLimitConfig
from flowpilot.ratelimit import InMemoryRateLimiter, RedisRateLimiter, get_rate_limiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_inmemory_limiter_sliding_window():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(limit=10, window_seconds=60, clock=clock)

    results = [await limiter.acquire("tenant-1") for _ in range(11)]
    assert results == [True] * 10 + [False]
    assert await limiter.acquire("tenant-2")

    clock.now += 59
    assert not await limiter.acquire("tenant-1")
    clock.now += 1.5
    assert await limiter.acquire("tenant-1")


class FakeScriptClient:
    def __init__(self, replies):
        self.replies = list(replies)
        self.invocations = []

    def register_script(self, script):
        assert "ZREMRANGEBYSCORE" in script

        async def _run(keys, args):
            self.invocations.append((keys, args))
            return self.replies.pop(0)

        return _run


@pytest.mark.asyncio
async def test_redis_limiter_uses_tenant_key():
    client = FakeScriptClient([1, 0])
    limiter = RedisRateLimiter(client, limit=2, window_seconds=30)

    assert await limiter.acquire("tenant-1")
    assert not await limiter.acquire("tenant-1")
    keys, args = client.invocations[0]
    assert keys == ["ratelimit:workflow_runs:tenant-1"]
    assert args[1:3] == [30, 2]


def test_get_rate_limiter_from_config():
    config = FlowpilotConfig(rate_limit=RateLimitConfig(max_runs=3, window_seconds=5))
    limiter = get_rate_limiter(config)
    assert isinstance(limiter, InMemoryRateLimiter)
    assert limiter.limit == 3

    config = FlowpilotConfig(rate_limit=RateLimitConfig(backend="redis"))
    limiter = get_rate_limiter(config, client=FakeScriptClient([]))
    assert isinstance(limiter, RedisRateLimiter)
