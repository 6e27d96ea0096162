"""Event transport contract shared by all backends."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Callable, Generic, Optional, Tuple, TypeVar

from ..events import DomainEvent

RawMessageT = TypeVar("RawMessageT")


def listening(lifespan: Optional[float]) -> Callable[[], bool]:
    """Predicate that stays true until ``lifespan`` seconds have passed.

    ``None`` or ``0`` means listen forever.
    """
    if not lifespan:
        return lambda: True
    loop = asyncio.get_running_loop()
    deadline = loop.time() + lifespan
    return lambda: loop.time() < deadline


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Publishes domain events to topics and lets consumers drain them.

    ``RawMessageT`` is whatever the backend hands back on subscribe and
    expects again in :meth:`ack`/:meth:`nack`.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Deliver ``event`` to every consumer of ``topic``."""
        raise NotImplementedError

    async def publish_event(self, event: DomainEvent) -> None:
        """Publish ``event`` on the topic derived from its type."""
        await self.publish(event.topic, event)

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DomainEvent]]:
        """Yield ``(raw_message, event)`` pairs from ``topic``.

        Args:
            topic: Topic to consume.
            lifespan: Seconds to keep listening. ``None`` listens forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark ``raw_message`` as processed."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject ``raw_message``. Backends without redelivery just ack."""
        await self.ack(raw_message)
