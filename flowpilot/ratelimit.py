"""Per-tenant sliding-window limits on run creation."""

from __future__ import annotations

import abc
import asyncio
import logging
import time
import uuid
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Optional

import redis.asyncio as redis

from .config import FlowpilotConfig, load_config
from .constants import DEFAULT_RATE_LIMIT, DEFAULT_RATE_WINDOW_SECONDS

logger = logging.getLogger(__name__)


class RateLimiter(metaclass=abc.ABCMeta):
    """Allow at most ``limit`` acquisitions per key in any rolling ``window``."""

    def __init__(
        self,
        limit: int = DEFAULT_RATE_LIMIT,
        window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds

    @abc.abstractmethod
    async def acquire(self, key: str) -> bool:
        """Consume one slot for ``key``; return ``False`` if the window is full."""
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    """Process-local sliding window of acquisition timestamps."""

    def __init__(
        self,
        limit: int = DEFAULT_RATE_LIMIT,
        window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(limit, window_seconds)
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True


# Trim, count and conditionally add in one round trip so concurrent
# ingestors share a single window.
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) >= limit then
    return 0
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, math.ceil(window * 1000))
return 1
"""


class RedisRateLimiter(RateLimiter):
    """Sliding window stored in a Redis sorted set per key."""

    def __init__(
        self,
        client: Any,
        limit: int = DEFAULT_RATE_LIMIT,
        window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS,
        prefix: str = "ratelimit:workflow_runs",
    ) -> None:
        super().__init__(limit, window_seconds)
        self._client = client
        self._prefix = prefix
        self._script = client.register_script(_SLIDING_WINDOW_SCRIPT)

    async def acquire(self, key: str) -> bool:
        allowed = await self._script(
            keys=[f"{self._prefix}:{key}"],
            args=[time.time(), self.window_seconds, self.limit, uuid.uuid4().hex],
        )
        return bool(int(allowed))


def get_rate_limiter(
    config: Optional[FlowpilotConfig] = None, client: Optional[Any] = None
) -> RateLimiter:
    """Build the configured rate limiter."""
    config = config or load_config()
    settings = config.rate_limit
    if settings.backend == "redis":
        if client is None:
            redis_conf = config.event_log.redis
            client = redis.Redis(
                host=redis_conf.host,
                port=redis_conf.port,
                db=redis_conf.db,
                password=redis_conf.password,
                decode_responses=True,
            )
        return RedisRateLimiter(
            client, limit=settings.max_runs, window_seconds=settings.window_seconds
        )
    return InMemoryRateLimiter(limit=settings.max_runs, window_seconds=settings.window_seconds)
