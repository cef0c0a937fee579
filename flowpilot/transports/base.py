"""Base event log interface for flowpilot transports."""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass
class LogEntry:
    """One entry read from an event log stream."""

    entry_id: str
    stream: str
    fields: dict[str, str]
    raw: Any = field(default=None, repr=False)


def encode_fields(fields: Mapping[str, Any]) -> dict[str, str]:
    """Flatten values to strings; structured values are JSON encoded."""
    encoded: dict[str, str] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value)
        elif isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        else:
            encoded[key] = str(value)
    return encoded


class BaseEventLog(metaclass=abc.ABCMeta):
    """Durable, append-only log with consumer-group delivery.

    Entries are delivered at least once: an entry stays pending for its
    consumer until acknowledged, and may be claimed by another consumer of
    the same group once it has been idle long enough.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def ensure_group(self, stream: str, group: str) -> None:
        """Create the consumer group (and stream) if missing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def append(self, stream: str, fields: Mapping[str, Any]) -> str:
        """Append an entry and return its id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def read(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: Optional[int] = None,
    ) -> list[LogEntry]:
        """Read entries never delivered to the group, blocking up to ``block_ms``."""
        raise NotImplementedError

    async def read_pending(
        self, stream: str, group: str, consumer: str, count: int = 10
    ) -> list[LogEntry]:
        """Re-read entries delivered to ``consumer`` but not yet acknowledged."""
        return []

    async def claim_stale(
        self, stream: str, group: str, consumer: str, min_idle_ms: int, count: int = 10
    ) -> list[LogEntry]:
        """Take over entries idle for ``min_idle_ms``, whichever consumer holds them."""
        return []

    @abc.abstractmethod
    async def ack(self, group: str, entry: LogEntry) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError
