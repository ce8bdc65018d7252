"""Queues that carry execution ids from the dispatcher to workers."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PracticeflowConfig, RedisConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(redis_conf: RedisConfig) -> BaseTransport:
    # Imported lazily so the redis package is only needed when selected.
    from .redis import RedisTransport

    return RedisTransport(**redis_conf.model_dump())


def get_transport(
    backend: Optional[str] = None, config: Optional[PracticeflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``.

    Falls back to ``PRACTICEFLOW_TRANSPORT`` and then to
    ``config.transport.backend``.
    """

    config = config or load_config()
    name = backend or os.getenv("PRACTICEFLOW_TRANSPORT") or config.transport.backend
    name = name.lower()

    if name == "redis":
        return _redis_transport(config.transport.redis)
    if name == "inmemory":
        return InMemoryTransport()
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
