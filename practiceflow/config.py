from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_MAX_STEPS_PER_RUN,
    DEFAULT_SWEEP_BATCH_SIZE,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
)


class RedisConfig(BaseModel):
    """Connection settings for the Redis queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Which queue carries execution ids to workers."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Engine loop settings."""

    max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN
    # "inline" runs new executions in the dispatcher's task; "queue" publishes
    # them to the transport for an ExecutionWorker.
    dispatch_mode: Literal["inline", "queue"] = "inline"


class SchedulerConfig(BaseModel):
    batch_size: int = DEFAULT_SWEEP_BATCH_SIZE
    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS


class CapabilitiesConfig(BaseModel):
    """Where to find the collaborator bundle.

    ``factory`` is a ``module:callable`` path returning a ``Capabilities``
    instance; without it the in-memory collaborators are used.
    """

    factory: Optional[str] = None
    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS


class PracticeflowConfig(BaseModel):
    """Settings for every practiceflow process, loaded once at start-up."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    capabilities: CapabilitiesConfig = CapabilitiesConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def _read_yaml(config_path: str) -> dict:
    if not os.path.exists(config_path):
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None) -> PracticeflowConfig:
    """Read settings from YAML, then apply environment overrides.

    Args:
        path: Config file to read. Defaults to ``PRACTICEFLOW_CONFIG`` or
            ``config.yaml`` in the working directory; a missing file yields
            the defaults.

    ``PRACTICEFLOW_DATABASE_URL`` (or ``DATABASE_URL``) and
    ``PRACTICEFLOW_LOG_LEVEL`` win over the file.
    """

    config_path = path or os.getenv("PRACTICEFLOW_CONFIG", "config.yaml")
    config = PracticeflowConfig(**_read_yaml(config_path))

    database_url = os.getenv("PRACTICEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if database_url:
        config.database_url = database_url
    log_level = os.getenv("PRACTICEFLOW_LOG_LEVEL")
    if log_level:
        config.log_level = log_level
    return config
