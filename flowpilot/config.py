from __future__ import annotations

import os
import socket
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_RATE_LIMIT,
    DEFAULT_RATE_WINDOW_SECONDS,
    TRIGGER_CONSUMER_GROUP,
    TRIGGER_STREAM,
)


class RedisConfig(BaseModel):
    """Configuration for Redis connections."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class KafkaConfig(BaseModel):
    """Configuration for the Kafka event log."""

    bootstrap_servers: str = "localhost:9092"


def _default_consumer() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class EventLogConfig(BaseModel):
    """Event log (trigger stream) settings."""

    backend: Literal["inmemory", "redis", "kafka"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    kafka: KafkaConfig = KafkaConfig()
    stream: str = TRIGGER_STREAM
    group: str = TRIGGER_CONSUMER_GROUP
    consumer: str = Field(default_factory=_default_consumer)
    block_ms: int = 5000
    batch_size: int = 10
    claim_idle_ms: int = 60_000


class ExecutorConfig(BaseModel):
    """Run executor and pool limits."""

    max_concurrent_runs: int = 50
    max_steps: int = 500
    max_execution_seconds: float = 300.0


class SchedulerConfig(BaseModel):
    poll_interval_seconds: float = 5.0
    batch_size: int = 100
    stale_run_seconds: float = 600.0


class RateLimitConfig(BaseModel):
    backend: Literal["inmemory", "redis"] = "inmemory"
    max_runs: int = DEFAULT_RATE_LIMIT
    window_seconds: int = DEFAULT_RATE_WINDOW_SECONDS


class AIConfig(BaseModel):
    """Completion provider settings."""

    model: str = "openai:gpt-4o-mini"
    temperature: float = 0.1


class OutboundConfig(BaseModel):
    """Whether output nodes' delivery instructions are appended to the event log."""

    enabled: bool = True


class FlowpilotConfig(BaseModel):
    """Top-level configuration model."""

    event_log: EventLogConfig = EventLogConfig()
    database_url: Optional[str] = None
    executor: ExecutorConfig = ExecutorConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    ai: AIConfig = AIConfig()
    outbound: OutboundConfig = OutboundConfig()


def load_config(path: Optional[str] = None) -> FlowpilotConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWPILOT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWPILOT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowpilotConfig(**data)
    else:
        config = FlowpilotConfig()

    env_db_url = os.getenv("FLOWPILOT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_backend = os.getenv("FLOWPILOT_EVENT_LOG")
    if env_backend:
        config.event_log.backend = env_backend  # type: ignore[assignment]
    env_consumer = os.getenv("FLOWPILOT_CONSUMER_NAME")
    if env_consumer:
        config.event_log.consumer = env_consumer
    return config
