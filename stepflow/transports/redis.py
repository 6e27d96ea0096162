"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..events import DomainEvent
from .base import BaseTransport, listening

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """One Redis list per topic. Producers LPUSH, consumers BRPOP.

    Redis lists have no delivery receipts, so a popped message is
    already consumed and :meth:`ack` has nothing to do.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "stepflow",
        block_timeout: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.block_timeout = block_timeout
        self._redis: Optional[Any] = None

    def queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def _client(self) -> Any:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def connect(self) -> None:
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await client.ping()
        self._redis = client
        logger.debug(f"Connected to redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: DomainEvent) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, DomainEvent]]:
        client = await self._client()
        queue_name = self.queue_name(topic)
        active = listening(lifespan)

        while active():
            popped = await client.brpop(queue_name, timeout=self.block_timeout)
            if not popped:
                continue
            _, payload = popped
            try:
                event = DomainEvent.from_json(payload)
            except PydanticValidationError as exc:
                logger.warning(f"Dropping malformed event on {queue_name}: {exc}")
                continue
            yield payload, event

    async def ack(self, raw_message: str) -> None:
        pass
