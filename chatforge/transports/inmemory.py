"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import MessageQueued
from .base import BaseTransport

RawInMemory = Tuple[str, str, MessageQueued]


class InMemoryTransport(BaseTransport[RawInMemory]):
    """Simple in-process queue for unit tests and single-process use."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawInMemory]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: MessageQueued) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInMemory, MessageQueued]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawInMemory) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawInMemory, requeue: bool = True) -> None:
        """Put the message back at the end of its queue when ``requeue`` is set."""
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
