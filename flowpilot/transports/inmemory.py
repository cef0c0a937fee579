"""In-memory event log for testing."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .base import BaseEventLog, LogEntry, encode_fields


@dataclass
class _Pending:
    consumer: str
    delivered_at: float
    deliveries: int = 1


@dataclass
class _Group:
    next_index: int = 0
    pending: Dict[str, _Pending] = field(default_factory=dict)


class InMemoryEventLog(BaseEventLog):
    """In-process stream with Redis-like consumer group bookkeeping."""

    def __init__(self) -> None:
        self._streams: Dict[str, list[LogEntry]] = defaultdict(list)
        self._groups: Dict[tuple[str, str], _Group] = {}
        self._seq = itertools.count(1)
        self._appended = asyncio.Condition()

    def entries(self, stream: str) -> list[LogEntry]:
        return list(self._streams.get(stream, []))

    def pending_count(self, stream: str, group: str) -> int:
        state = self._groups.get((stream, group))
        return len(state.pending) if state else 0

    async def ensure_group(self, stream: str, group: str) -> None:
        self._groups.setdefault((stream, group), _Group())

    async def append(self, stream: str, fields: Mapping[str, Any]) -> str:
        entry_id = f"{int(time.time() * 1000)}-{next(self._seq)}"
        self._streams[stream].append(
            LogEntry(entry_id=entry_id, stream=stream, fields=encode_fields(fields))
        )
        async with self._appended:
            self._appended.notify_all()
        return entry_id

    async def read(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: Optional[int] = None,
    ) -> list[LogEntry]:
        state = self._group(stream, group)
        if state.next_index >= len(self._streams[stream]) and block_ms:
            async with self._appended:
                try:
                    await asyncio.wait_for(
                        self._appended.wait_for(
                            lambda: state.next_index < len(self._streams[stream])
                        ),
                        timeout=block_ms / 1000,
                    )
                except asyncio.TimeoutError:
                    return []

        batch = self._streams[stream][state.next_index : state.next_index + count]
        state.next_index += len(batch)
        now = time.monotonic()
        for entry in batch:
            state.pending[entry.entry_id] = _Pending(consumer=consumer, delivered_at=now)
        return list(batch)

    async def read_pending(
        self, stream: str, group: str, consumer: str, count: int = 10
    ) -> list[LogEntry]:
        state = self._group(stream, group)
        ids = [eid for eid, p in state.pending.items() if p.consumer == consumer][:count]
        return self._lookup(stream, ids)

    async def claim_stale(
        self, stream: str, group: str, consumer: str, min_idle_ms: int, count: int = 10
    ) -> list[LogEntry]:
        state = self._group(stream, group)
        now = time.monotonic()
        claimed: list[str] = []
        for entry_id, pending in state.pending.items():
            if len(claimed) >= count:
                break
            if (now - pending.delivered_at) * 1000 >= min_idle_ms:
                pending.consumer = consumer
                pending.delivered_at = now
                pending.deliveries += 1
                claimed.append(entry_id)
        return self._lookup(stream, claimed)

    async def ack(self, group: str, entry: LogEntry) -> None:
        self._group(entry.stream, group).pending.pop(entry.entry_id, None)

    def _group(self, stream: str, group: str) -> _Group:
        try:
            return self._groups[(stream, group)]
        except KeyError:
            raise RuntimeError(f"Consumer group {group} does not exist on {stream}") from None

    def _lookup(self, stream: str, ids: list[str]) -> list[LogEntry]:
        wanted = set(ids)
        return [entry for entry in self._streams[stream] if entry.entry_id in wanted]
