"""Message dispatcher: the trigger side of the generation workflow."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import MESSAGE_TOPIC
from .contracts import MessageQueued
from .persistence import MessageState, MessageStatus, WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Service responsible for enqueueing chat messages for generation."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        topic: str = MESSAGE_TOPIC,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self.topic = topic

    async def submit_message(
        self, conversation_id: str, text: str, message_id: Optional[str] = None
    ) -> str:
        """Record ``text`` as a queued message and publish it for a worker.

        Args:
            conversation_id: Conversation the message belongs to.
            text: The user's message.
            message_id: Optional id assigned by the caller's message store.

        Returns:
            Identifier of the queued message.
        """
        envelope = MessageQueued(conversation_id=conversation_id, text=text)
        if message_id:
            envelope.message_id = message_id

        await self._repository.save_message(
            MessageState(
                message_id=envelope.message_id,
                conversation_id=conversation_id,
                text=text,
                status=MessageStatus.QUEUED,
            )
        )
        await self._transport.publish(self.topic, envelope)
        logger.info(
            f"Queued message {envelope.message_id} for conversation {conversation_id}"
        )
        return envelope.message_id
