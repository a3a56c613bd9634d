"""In-process signal transport."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import SignalMessage
from .base import BaseTransport

RawSignal = Tuple[str, SignalMessage]


class InMemoryTransport(BaseTransport[RawSignal]):
    """Per-topic FIFO queues living in the current process."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawSignal]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def publish(self, topic: str, message: SignalMessage) -> None:
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def poll(self, topic: str) -> Optional[Tuple[RawSignal, SignalMessage]]:
        async with self._lock:
            if not self._queues[topic]:
                return None
            raw_message = self._queues[topic].popleft()
        return raw_message, raw_message[1]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawSignal, SignalMessage]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            item = await self.poll(topic)
            if item is not None:
                yield item
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawSignal) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
