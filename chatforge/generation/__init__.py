"""Language model providers and the generation invoker."""

from __future__ import annotations

from typing import Optional

from ..config import GenerationConfig, load_config
from .base import GenerationInvoker, LanguageModel, classify_exception
from .pydantic_ai_model import PydanticAIModel


def get_invoker(
    model_client: Optional[LanguageModel] = None,
    config: Optional[GenerationConfig] = None,
) -> GenerationInvoker:
    """Build a :class:`GenerationInvoker` for the configured model."""

    config = config or load_config().generation
    return GenerationInvoker(model_client or PydanticAIModel(), model_id=config.model)


__all__ = [
    "GenerationInvoker",
    "LanguageModel",
    "PydanticAIModel",
    "classify_exception",
    "get_invoker",
]
