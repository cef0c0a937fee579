"""Redis Streams event log for cross-process delivery."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import ResponseError

from .base import BaseEventLog, LogEntry, encode_fields

logger = logging.getLogger(__name__)


class RedisEventLog(BaseEventLog):
    """Consumer-group delivery over Redis Streams (XREADGROUP/XACK/XAUTOCLAIM)."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = client

    @property
    def client(self) -> Any:
        if self._redis is None:
            raise RuntimeError("RedisEventLog not connected")
        return self._redis

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ensure_group(self, stream: str, group: str) -> None:
        try:
            await self.client.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info(f"Created consumer group {group} on {stream}")
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def append(self, stream: str, fields: Mapping[str, Any]) -> str:
        return await self.client.xadd(stream, encode_fields(fields))

    async def read(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: Optional[int] = None,
    ) -> list[LogEntry]:
        response = await self.client.xreadgroup(
            group, consumer, {stream: ">"}, count=count, block=block_ms
        )
        return self._entries(response)

    async def read_pending(
        self, stream: str, group: str, consumer: str, count: int = 10
    ) -> list[LogEntry]:
        response = await self.client.xreadgroup(group, consumer, {stream: "0"}, count=count)
        return self._entries(response)

    async def claim_stale(
        self, stream: str, group: str, consumer: str, min_idle_ms: int, count: int = 10
    ) -> list[LogEntry]:
        response = await self.client.xautoclaim(
            stream, group, consumer, min_idle_time=min_idle_ms, start_id="0-0", count=count
        )
        messages = response[1] if response else []
        return [
            LogEntry(entry_id=entry_id, stream=stream, fields=dict(fields or {}))
            for entry_id, fields in messages
            if fields
        ]

    async def ack(self, group: str, entry: LogEntry) -> None:
        await self.client.xack(entry.stream, group, entry.entry_id)

    @staticmethod
    def _entries(response: Any) -> list[LogEntry]:
        entries: list[LogEntry] = []
        for stream, messages in response or []:
            for entry_id, fields in messages:
                # Deleted entries come back with empty fields.
                if fields:
                    entries.append(LogEntry(entry_id=entry_id, stream=stream, fields=dict(fields)))
        return entries
