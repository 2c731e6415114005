"""Core message contracts for the chatforge generation workflow."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class MessageQueued(BaseModel):
    """
    Envelope exchanged over the transport when a chat message awaits a reply.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "MessageQueued":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class ScrapeResult(BaseModel):
    """Outcome of scraping a single URL."""

    url: str
    ok: bool
    content: Optional[str] = None
    error: Optional[str] = None


class ScrapeResponse(BaseModel):
    """Raw answer from a scrape provider."""

    success: bool
    markdown: Optional[str] = None
    error: Optional[str] = None


class ModelResponse(BaseModel):
    """Raw answer from a language-model provider."""

    text: str
    usage: Dict[str, Any] = Field(default_factory=dict)


class GeneratedText(BaseModel):
    """Text produced by the generation step."""

    text: str
    model: str
    usage: Dict[str, Any] = Field(default_factory=dict)
