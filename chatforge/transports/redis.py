"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..constants import DEFAULT_VISIBILITY_TIMEOUT
from ..contracts import MessageQueued
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawRedis = Tuple[str, str]


class RedisTransport(BaseTransport[RawRedis]):
    """Redis-based transport for distributed messaging.

    Each topic is a Redis list. A consumed message is moved onto a
    per-topic processing list and removed from it on ``ack``. The time each
    message was taken is kept in a sorted set, and :meth:`requeue_stale`
    moves messages held longer than ``visibility_timeout`` back onto the
    queue, so a message whose worker died is delivered again.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.visibility_timeout = visibility_timeout
        self._redis: Optional[Any] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"chatforge:{topic}"

    @classmethod
    def processing_name(cls, topic: str) -> str:
        return f"{cls.queue_name(topic)}:processing"

    @classmethod
    def taken_at_name(cls, topic: str) -> str:
        return f"{cls.processing_name(topic)}:taken_at"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: MessageQueued) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()

        await self._redis.lpush(self.queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRedis, MessageQueued]]:
        """Subscribe to messages from Redis queue.

        Stale messages are requeued when the subscription starts and then
        every half ``visibility_timeout``.
        """
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None
        next_sweep = loop.time()

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            if loop.time() >= next_sweep:
                await self.requeue_stale(topic)
                next_sweep = loop.time() + self.visibility_timeout / 2

            # Blocking move with timeout
            message_json = await self._redis.blmove(
                self.queue_name(topic),
                self.processing_name(topic),
                timeout=1,
                src="RIGHT",
                dest="LEFT",
            )
            if message_json:
                await self._redis.zadd(
                    self.taken_at_name(topic), {message_json: time.time()}
                )
                try:
                    message = MessageQueued.model_validate(json.loads(message_json))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.error(f"Dropping unparseable message on {topic}: {e}")
                    await self._forget(topic, message_json)
                    continue
                yield (topic, message_json), message

    async def requeue_stale(self, topic: str) -> int:
        """Move messages unacked for ``visibility_timeout`` back onto the queue.

        Returns the number of messages requeued. ``LREM`` decides which of
        several sweeping workers requeues a message, so it is pushed once.
        """
        if not self._redis:
            await self.connect()

        processing = self.processing_name(topic)
        taken_at = self.taken_at_name(topic)
        now = time.time()
        # a consumer that died between BLMOVE and ZADD left no timestamp
        for message_json in await self._redis.lrange(processing, 0, -1):
            await self._redis.zadd(taken_at, {message_json: now}, nx=True)

        requeued = 0
        stale = await self._redis.zrangebyscore(
            taken_at, "-inf", now - self.visibility_timeout
        )
        for message_json in stale:
            if await self._redis.lrem(processing, 1, message_json):
                await self._redis.rpush(self.queue_name(topic), message_json)
                requeued += 1
            await self._redis.zrem(taken_at, message_json)
        if requeued:
            logger.warning(f"Requeued {requeued} stale message(s) on {topic}")
        return requeued

    async def _forget(self, topic: str, message_json: str) -> None:
        await self._redis.lrem(self.processing_name(topic), 1, message_json)
        await self._redis.zrem(self.taken_at_name(topic), message_json)

    async def ack(self, raw_message: RawRedis) -> None:
        """Remove the message from the processing list."""
        topic, message_json = raw_message
        await self._forget(topic, message_json)

    async def nack(self, raw_message: RawRedis, requeue: bool = True) -> None:
        """Drop the message from processing and optionally requeue it."""
        topic, message_json = raw_message
        await self._forget(topic, message_json)
        if requeue:
            await self._redis.rpush(self.queue_name(topic), message_json)
