import asyncio

import pytest

from chatforge.contracts import MessageQueued
from chatforge.transports import InMemoryTransport
from chatforge.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_publish_subscribe():
    transport = InMemoryTransport()
    first = MessageQueued(conversation_id="c1", text="one")
    second = MessageQueued(conversation_id="c1", text="two")
    await transport.publish("chat.messages", first)
    await transport.publish("chat.messages", second)

    received = []
    async for raw, message in transport.subscribe("chat.messages", lifespan=0.2):
        received.append(message)
        await transport.ack(raw)

    assert [m.message_id for m in received] == [first.message_id, second.message_id]


@pytest.mark.asyncio
async def test_inmemory_topics_are_separate():
    transport = InMemoryTransport()
    await transport.publish("other", MessageQueued(conversation_id="c1", text="x"))

    received = [m async for _, m in transport.subscribe("chat.messages", lifespan=0.1)]
    assert received == []


@pytest.mark.asyncio
async def test_inmemory_nack_requeues():
    transport = InMemoryTransport()
    message = MessageQueued(conversation_id="c1", text="retry me")
    await transport.publish("chat.messages", message)

    deliveries = 0
    async for raw, received in transport.subscribe("chat.messages", lifespan=0.2):
        deliveries += 1
        if deliveries == 1:
            await transport.nack(raw, requeue=True)
        else:
            await transport.ack(raw)
            assert received.message_id == message.message_id

    assert deliveries == 2


def test_message_envelope_json_roundtrip():
    message = MessageQueued(conversation_id="c1", text="see https://a.com")
    restored = MessageQueued.from_json(message.to_json())
    assert restored == message


def test_redis_queue_names():
    assert RedisTransport.queue_name("chat.messages") == "chatforge:chat.messages"
    assert (
        RedisTransport.processing_name("chat.messages")
        == "chatforge:chat.messages:processing"
    )


@pytest.mark.asyncio
async def test_inmemory_has_no_stale_messages():
    transport = InMemoryTransport()
    await transport.publish("chat.messages", MessageQueued(conversation_id="c1", text="x"))
    assert await transport.requeue_stale("chat.messages") == 0


class FakeRedis:
    """The subset of ``redis.asyncio.Redis`` list and sorted-set calls in use."""

    def __init__(self):
        self.lists = {}
        self.zsets = {}

    async def ping(self):
        return True

    async def aclose(self):
        pass

    async def lpush(self, name, value):
        self.lists.setdefault(name, []).insert(0, value)

    async def rpush(self, name, value):
        self.lists.setdefault(name, []).append(value)

    async def blmove(self, src_name, dest_name, timeout, src="RIGHT", dest="LEFT"):
        items = self.lists.get(src_name)
        if not items:
            await asyncio.sleep(0.01)
            return None
        value = items.pop() if src == "RIGHT" else items.pop(0)
        await self.lpush(dest_name, value)
        return value

    async def lrange(self, name, start, end):
        return list(self.lists.get(name, []))

    async def lrem(self, name, count, value):
        items = self.lists.get(name, [])
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def zadd(self, name, mapping, nx=False):
        zset = self.zsets.setdefault(name, {})
        for member, score in mapping.items():
            if nx and member in zset:
                continue
            zset[member] = score

    async def zrangebyscore(self, name, low, high):
        return [m for m, s in self.zsets.get(name, {}).items() if s <= high]

    async def zrem(self, name, value):
        self.zsets.get(name, {}).pop(value, None)


def _redis_transport(visibility_timeout):
    transport = RedisTransport(visibility_timeout=visibility_timeout)
    transport._redis = FakeRedis()
    return transport


@pytest.mark.asyncio
async def test_redis_ack_clears_processing_state():
    transport = _redis_transport(visibility_timeout=60)
    message = MessageQueued(conversation_id="c1", text="hello")
    await transport.publish("chat.messages", message)

    async for raw, received in transport.subscribe("chat.messages", lifespan=0.1):
        assert received.message_id == message.message_id
        await transport.ack(raw)

    fake = transport._redis
    assert fake.lists[RedisTransport.processing_name("chat.messages")] == []
    assert fake.zsets[RedisTransport.taken_at_name("chat.messages")] == {}
    assert await transport.requeue_stale("chat.messages") == 0


@pytest.mark.asyncio
async def test_redis_requeues_message_of_crashed_consumer():
    transport = _redis_transport(visibility_timeout=60)
    message = MessageQueued(conversation_id="c1", text="hello")
    await transport.publish("chat.messages", message)

    # the consumer takes the message and dies without acking
    async for _raw, _received in transport.subscribe("chat.messages", lifespan=0.1):
        break

    fake = transport._redis
    assert await transport.requeue_stale("chat.messages") == 0
    transport.visibility_timeout = 0
    assert await transport.requeue_stale("chat.messages") == 1
    assert fake.lists[RedisTransport.processing_name("chat.messages")] == []
    assert fake.lists[RedisTransport.queue_name("chat.messages")] == [message.to_json()]

    redelivered = []
    async for raw, received in transport.subscribe("chat.messages", lifespan=0.1):
        redelivered.append(received.message_id)
        await transport.ack(raw)
    assert redelivered == [message.message_id]


@pytest.mark.asyncio
async def test_redis_stamps_untracked_processing_entries():
    transport = _redis_transport(visibility_timeout=0)
    fake = transport._redis
    payload = MessageQueued(conversation_id="c1", text="orphan").to_json()
    # moved by a consumer that died before recording when it took the message
    await fake.lpush(RedisTransport.processing_name("chat.messages"), payload)

    assert await transport.requeue_stale("chat.messages") == 1
    assert fake.lists[RedisTransport.queue_name("chat.messages")] == [payload]
