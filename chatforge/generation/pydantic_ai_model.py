"""Language model provider built on ``pydantic_ai`` agents."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic_ai import Agent

from ..contracts import ModelResponse

logger = logging.getLogger(__name__)

_USAGE_FIELDS = (
    "requests",
    "input_tokens",
    "output_tokens",
    "request_tokens",
    "response_tokens",
    "total_tokens",
)


def _usage_to_dict(usage: Any) -> Dict[str, int]:
    data: Dict[str, int] = {}
    for field in _USAGE_FIELDS:
        value = getattr(usage, field, None)
        if isinstance(value, int):
            data[field] = value
    return data


class PydanticAIModel:
    """Run a plain-text ``pydantic_ai.Agent`` for each requested model id.

    Agents are created on first use so that missing credentials surface as a
    generation failure instead of at construction time.
    """

    def __init__(self, instructions: Optional[str] = None) -> None:
        self.instructions = instructions
        self._agents: Dict[str, Agent] = {}

    def _agent_for(self, model: str) -> Agent:
        agent = self._agents.get(model)
        if agent is None:
            logger.debug(f"Creating pydantic-ai agent for model {model}")
            agent = Agent(model, instructions=self.instructions)
            self._agents[model] = agent
        return agent

    async def generate(self, model: str, prompt: str) -> ModelResponse:
        result = await self._agent_for(model).run(prompt)
        return ModelResponse(text=str(result.output), usage=_usage_to_dict(result.usage()))
