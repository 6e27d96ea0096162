"""Process-local event transport."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..events import DomainEvent
from .base import BaseTransport, listening

InMemoryMessage = Tuple[str, DomainEvent]


class InMemoryTransport(BaseTransport[InMemoryMessage]):
    """Keeps one FIFO per topic inside the current process.

    Used by tests and by the CLI when no broker is configured. Nacked
    messages go back to the front of their topic.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval
        self._topics: Dict[str, Deque[InMemoryMessage]] = defaultdict(deque)
        self._in_flight: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: DomainEvent) -> None:
        async with self._lock:
            self._topics[topic].append((event.to_json(), event))

    def pending(self, topic: str) -> List[DomainEvent]:
        """Events published on ``topic`` that were not consumed yet."""
        return [event for _, event in self._topics[topic]]

    async def _take(self, topic: str) -> Optional[InMemoryMessage]:
        async with self._lock:
            queue = self._topics[topic]
            if not queue:
                return None
            message = queue.popleft()
            self._in_flight[message[1].event_id] = topic
            return message

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[InMemoryMessage, DomainEvent]]:
        active = listening(lifespan)
        while active():
            message = await self._take(topic)
            if message is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield message, message[1]

    async def ack(self, raw_message: InMemoryMessage) -> None:
        self._in_flight.pop(raw_message[1].event_id, None)

    async def nack(self, raw_message: InMemoryMessage, requeue: bool = True) -> None:
        topic = self._in_flight.pop(raw_message[1].event_id, None)
        if requeue and topic is not None:
            async with self._lock:
                self._topics[topic].appendleft(raw_message)
