"""Event log factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import FlowpilotConfig, load_config
from .base import BaseEventLog, LogEntry, encode_fields
from .inmemory import InMemoryEventLog


def get_event_log(
    backend: Optional[str] = None, config: Optional[FlowpilotConfig] = None
) -> BaseEventLog:
    """Factory function to get the configured event log."""

    config = config or load_config()
    backend = (backend or config.event_log.backend).lower()

    if backend == "inmemory":
        return InMemoryEventLog()
    elif backend == "redis":
        from .redis import RedisEventLog

        redis_conf = config.event_log.redis
        return RedisEventLog(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "kafka":
        from .kafka import KafkaEventLog

        return KafkaEventLog(brokers=config.event_log.kafka.bootstrap_servers.split(","))
    else:
        raise ValueError(f"Unsupported event log backend: {backend}")


__all__ = ["BaseEventLog", "InMemoryEventLog", "LogEntry", "encode_fields", "get_event_log"]
