"""Worker that feeds queued chat messages into the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .constants import MESSAGE_TOPIC
from .contracts import MessageQueued
from .orchestrator import WorkflowOrchestrator
from .persistence import WorkflowRun
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class GenerationWorker:
    """Consumes ``MessageQueued`` envelopes and runs the generation workflow."""

    def __init__(
        self,
        transport: BaseTransport,
        orchestrator: WorkflowOrchestrator,
        topic: str = MESSAGE_TOPIC,
        resume_on_start: bool = True,
        resume_interval: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self.topic = topic
        self.resume_on_start = resume_on_start
        self.resume_interval = resume_interval
        self.processed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for queued messages on the configured topic.

        Runs left unfinished by a previous process are resumed first. With
        ``resume_interval`` set, stale messages and runs whose lease expired
        are recovered again on that interval while the worker listens.
        """
        if self.resume_on_start:
            await self.recover()

        sweeper = None
        if self.resume_interval:
            sweeper = asyncio.ensure_future(self._recover_periodically())
        try:
            async for raw_message, message in self._transport.subscribe(
                self.topic, lifespan=lifespan
            ):
                await self._handle_message(raw_message, message)
        finally:
            if sweeper is not None:
                sweeper.cancel()
                await asyncio.gather(sweeper, return_exceptions=True)

    async def recover(self) -> list[WorkflowRun]:
        """Requeue stale transport messages and resume unleased runs."""
        requeued = await self._transport.requeue_stale(self.topic)
        if requeued:
            logger.info(f"Requeued {requeued} unacked message(s) on {self.topic}")
        resumed = await self._orchestrator.resume_incomplete()
        if resumed:
            logger.info(f"Resumed {len(resumed)} interrupted run(s)")
        return resumed

    async def _recover_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.resume_interval)
            try:
                await self.recover()
            except Exception:
                logger.exception("Periodic recovery failed; retrying next interval")

    async def _handle_message(self, raw_message: Any, message: MessageQueued) -> WorkflowRun:
        logger.info(f"Received message {message.message_id}")
        try:
            run = await self._orchestrator.on_message_queued(
                message.message_id, message.text, conversation_id=message.conversation_id
            )
        except Exception:
            # the run is left resumable in the repository
            logger.exception(f"Failed to process message {message.message_id}")
            await self._transport.nack(raw_message, requeue=True)
            raise
        await self._transport.ack(raw_message)
        self.processed += 1
        logger.info(
            f"Message {message.message_id} handled by run {run.run_id}: {run.status.value}"
        )
        return run
