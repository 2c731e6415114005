import pytest

from chatforge.constants import MESSAGE_TOPIC
from chatforge.dispatch import MessageDispatcher
from chatforge.persistence import MessageStatus
from chatforge.transports import InMemoryTransport


@pytest.mark.asyncio
async def test_submit_message_records_and_publishes(repository):
    transport = InMemoryTransport()
    dispatcher = MessageDispatcher(transport, repository)

    message_id = await dispatcher.submit_message("conv-1", "read https://a.com")

    state = await repository.get_message(message_id)
    assert state.status is MessageStatus.QUEUED
    assert state.conversation_id == "conv-1"
    assert state.text == "read https://a.com"

    topic, _, envelope = transport._queues[MESSAGE_TOPIC][0]
    assert topic == MESSAGE_TOPIC
    assert envelope.message_id == message_id
    assert envelope.text == "read https://a.com"


@pytest.mark.asyncio
async def test_submit_message_keeps_caller_id(repository):
    transport = InMemoryTransport()
    dispatcher = MessageDispatcher(transport, repository, topic="custom")

    message_id = await dispatcher.submit_message("conv-1", "hi", message_id="msg-42")

    assert message_id == "msg-42"
    assert transport._queues["custom"][0][2].message_id == "msg-42"
