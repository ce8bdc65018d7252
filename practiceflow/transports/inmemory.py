"""In-process queue for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import ExecutionMessage
from .base import BaseTransport

RawMessage = Tuple[str, ExecutionMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.acked: list[str] = []

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def publish(self, topic: str, message: ExecutionMessage) -> None:
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, ExecutionMessage]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue
            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawMessage) -> None:
        self.acked.append(raw_message[1].message_id)
