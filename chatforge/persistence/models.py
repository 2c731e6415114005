"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


ACTIVE_RUN_STATUSES = (RunStatus.QUEUED, RunStatus.RUNNING)


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowRun(BaseModel):
    """One execution of the generation pipeline for a single message."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message_id: str
    conversation_id: Optional[str] = None
    input_text: str = ""
    status: RunStatus = RunStatus.QUEUED
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    owner_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None


class StepRecord(BaseModel):
    """Memoized outcome of one named step within a run."""

    run_id: str
    step_name: str
    input_fingerprint: str
    status: StepStatus = StepStatus.PENDING
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempt: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class MessageState(BaseModel):
    """Read model the chat UI polls for a message's reply."""

    message_id: str
    conversation_id: Optional[str] = None
    text: str = ""
    status: MessageStatus = MessageStatus.QUEUED
    content: Optional[str] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


def lease_is_held(run: WorkflowRun, owner_id: str, now: datetime) -> bool:
    """Return ``True`` when another owner holds an unexpired lease on ``run``."""
    return (
        run.owner_id is not None
        and run.owner_id != owner_id
        and run.lease_expires_at is not None
        and run.lease_expires_at > now
    )
