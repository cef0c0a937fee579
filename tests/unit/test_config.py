"""Tests for configuration loading."""

from flowpilot.config import load_config
from flowpilot.transports import get_event_log
from flowpilot.transports.kafka import KafkaEventLog
from flowpilot.transports.redis import RedisEventLog


def test_load_config_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWPILOT_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWPILOT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("FLOWPILOT_EVENT_LOG", raising=False)

    config = load_config()
    assert config.event_log.backend == "inmemory"
    assert config.event_log.stream == "stream:workflow_triggers"
    assert config.event_log.group == "workflow_trigger_processors"
    assert config.executor.max_concurrent_runs == 50
    assert config.rate_limit.max_runs == 10
    assert config.rate_limit.window_seconds == 60
    assert config.database_url is None


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
event_log:
  backend: redis
  redis:
    host: testhost
    port: 1234
scheduler:
  poll_interval_seconds: 1
ai:
  model: "test"
"""
    )
    monkeypatch.setenv("FLOWPILOT_CONFIG", str(config_path))
    monkeypatch.setenv("FLOWPILOT_CONSUMER_NAME", "worker-a")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/flowpilot.db")

    config = load_config()
    assert config.event_log.backend == "redis"
    assert config.event_log.redis.host == "testhost"
    assert config.event_log.redis.port == 1234
    assert config.event_log.consumer == "worker-a"
    assert config.scheduler.poll_interval_seconds == 1
    assert config.ai.model == "test"
    assert config.database_url == "sqlite:///tmp/flowpilot.db"


def test_get_event_log_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
event_log:
  backend: redis
  redis:
    host: confighost
    port: 6380
  kafka:
    bootstrap_servers: "k1:9092,k2:9092"
"""
    )
    monkeypatch.setenv("FLOWPILOT_CONFIG", str(config_path))
    monkeypatch.delenv("FLOWPILOT_EVENT_LOG", raising=False)

    event_log = get_event_log()
    assert isinstance(event_log, RedisEventLog)
    assert event_log.host == "confighost"
    assert event_log.port == 6380

    kafka = get_event_log("kafka")
    assert isinstance(kafka, KafkaEventLog)
    assert kafka.brokers == ["k1:9092", "k2:9092"]
