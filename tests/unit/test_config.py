"""Tests for configuration loading."""

import pytest

from practiceflow.config import load_config
from practiceflow.transports import InMemoryTransport, get_transport
from practiceflow.transports.redis import RedisTransport


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("PRACTICEFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("PRACTICEFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()

    assert config.transport.backend == "inmemory"
    assert config.engine.max_steps_per_run == 100
    assert config.engine.dispatch_mode == "inline"
    assert config.scheduler.batch_size == 50
    assert config.database_url is None


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  max_steps_per_run: 20
  dispatch_mode: queue
scheduler:
  batch_size: 5
capabilities:
  webhook_timeout_seconds: 2.5
"""
    )
    monkeypatch.setenv("PRACTICEFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("PRACTICEFLOW_DATABASE_URL", "sqlite:///tmp/flows.db")
    monkeypatch.setenv("PRACTICEFLOW_LOG_LEVEL", "debug")

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.max_steps_per_run == 20
    assert config.engine.dispatch_mode == "queue"
    assert config.scheduler.batch_size == 5
    assert config.capabilities.webhook_timeout_seconds == 2.5
    assert config.database_url == "sqlite:///tmp/flows.db"
    assert config.log_level == "debug"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("PRACTICEFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("PRACTICEFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_transport_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("PRACTICEFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("PRACTICEFLOW_TRANSPORT", "InMemory")
    assert isinstance(get_transport(), InMemoryTransport)

    with pytest.raises(ValueError):
        get_transport("kafka")
