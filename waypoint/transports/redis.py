"""Redis transport for cross-process resume signals."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import SignalMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis list-backed transport: LPUSH to publish, RPOP/BRPOP to consume."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "waypoint",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: SignalMessage) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    def _decode(self, message_json: str) -> Optional[SignalMessage]:
        try:
            return SignalMessage.from_json(message_json)
        except ValidationError as e:
            logger.warning(f"Dropping malformed signal: {e}")
            return None

    async def poll(self, topic: str) -> Optional[Tuple[str, SignalMessage]]:
        if not self._redis:
            await self.connect()
        while True:
            message_json = await self._redis.rpop(self._queue_name(topic))
            if message_json is None:
                return None
            message = self._decode(message_json)
            if message is not None:
                return message_json, message

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, SignalMessage]]:
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                message = self._decode(message_json)
                if message is not None:
                    yield message_json, message

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment (message already consumed)."""
        pass
