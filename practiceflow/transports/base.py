"""Queue interface used to hand executions to workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import ExecutionMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """A queue of :class:`ExecutionMessage` envelopes.

    ``RawMessageT`` is whatever the backend needs back in :meth:`ack` to
    settle a delivery.
    """

    async def connect(self) -> None:
        """Open the broker connection; backends without one skip this."""

    async def disconnect(self) -> None:
        """Release the broker connection."""

    @abc.abstractmethod
    async def publish(self, topic: str, message: ExecutionMessage) -> None:
        """Enqueue ``message`` on ``topic``."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ExecutionMessage]]:
        """Async generator of ``(raw, message)`` deliveries from ``topic``.

        Stops after ``lifespan`` seconds, or never when it is ``None``.
        """

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery. Backends without redelivery just settle it."""
        await self.ack(raw_message)
