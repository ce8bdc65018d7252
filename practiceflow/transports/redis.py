"""Redis list transport for cross-process hand-off."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import ExecutionMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

# Seconds BRPOP blocks before re-checking the lifespan deadline.
_POP_TIMEOUT = 1


class RedisTransport(BaseTransport[str]):
    """Redis-backed queue: ``LPUSH`` to publish, ``BRPOP`` to consume.

    Each topic is a list named ``<prefix>:<topic>``. A popped message is
    gone from Redis, so acknowledging is a no-op and a worker that dies
    mid-execution relies on the scheduler's running-execution recovery.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "practiceflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._client: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def _ensure_client(self) -> Any:
        if self._client is None:
            await self.connect()
        return self._client

    async def connect(self) -> None:
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await client.ping()
        self._client = client
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def publish(self, topic: str, message: ExecutionMessage) -> None:
        client = await self._ensure_client()
        await client.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, ExecutionMessage]]:
        client = await self._ensure_client()
        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan

        while deadline is None or loop.time() < deadline:
            popped = await client.brpop(queue_name, timeout=_POP_TIMEOUT)
            if not popped:
                continue
            payload = popped[1]
            try:
                message = ExecutionMessage.from_json(payload)
            except ValidationError as exc:
                logger.error(f"Dropping malformed message on {queue_name}: {exc}")
                continue
            yield payload, message

    async def ack(self, raw_message: str) -> None:
        """Nothing to settle: ``BRPOP`` already removed the message."""
