"""Queue consumer that runs executions published by the dispatcher."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import EXECUTION_TOPIC
from .contracts import ExecutionMessage
from .engine import WorkflowEngine
from .exceptions import ExecutionNotFoundError
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class ExecutionWorker:
    """Processes executions by listening to transport messages."""

    def __init__(
        self,
        transport: BaseTransport,
        engine: WorkflowEngine,
        topic: str = EXECUTION_TOPIC,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self._topic = topic
        self.handled = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume messages on the topic until ``lifespan`` elapses."""
        async for raw_message, message in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except Exception:
                logger.exception(
                    f"Worker failed on execution {message.execution_id}"
                )
                await self._transport.nack(raw_message, requeue=False)
                continue
            await self._transport.ack(raw_message)

    async def handle(self, message: ExecutionMessage) -> None:
        try:
            execution = await self._engine.process_execution(message.execution_id)
        except ExecutionNotFoundError:
            logger.warning(f"Message {message.message_id} names unknown execution {message.execution_id}")
            return
        self.handled += 1
        logger.info(
            f"Execution {execution.id} is {execution.status.value} after worker run"
        )
