"""Language model interface and the single-call generation invoker."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

import httpx
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior, UserError

from ..constants import DEFAULT_MODEL
from ..contracts import GeneratedText, ModelResponse
from ..errors import ErrorClassification, GenerationError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


class LanguageModel(Protocol):
    """Provider that completes a prompt with the given model."""

    async def generate(self, model: str, prompt: str) -> ModelResponse:
        """Return the model's text or raise on provider failure."""


def classify_status(status_code: int) -> ErrorClassification:
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return ErrorClassification.TRANSIENT
    return ErrorClassification.PERMANENT


def classify_exception(exc: BaseException) -> ErrorClassification:
    """Decide whether a provider exception could succeed on another attempt."""
    if isinstance(exc, ModelHTTPError):
        return classify_status(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(
        exc,
        (
            UnexpectedModelBehavior,
            httpx.TransportError,
            asyncio.TimeoutError,
            ConnectionError,
        ),
    ):
        return ErrorClassification.TRANSIENT
    if isinstance(exc, UserError):
        return ErrorClassification.PERMANENT
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return classify_status(status_code)
    return ErrorClassification.PERMANENT


class GenerationInvoker:
    """Call the language model exactly once per :meth:`generate`.

    Retries are the orchestrator's job; failures surface as
    :class:`GenerationError` with a transient/permanent classification.
    """

    def __init__(self, model_client: LanguageModel, model_id: str = DEFAULT_MODEL) -> None:
        self._model_client = model_client
        self.model_id = model_id

    async def generate(self, prompt: str) -> GeneratedText:
        started = time.monotonic()
        try:
            response = await self._model_client.generate(self.model_id, prompt)
        except GenerationError:
            raise
        except Exception as e:
            classification = classify_exception(e)
            logger.warning(
                f"Generation with {self.model_id} failed ({classification.value}): {e}"
            )
            raise GenerationError(classification, f"{type(e).__name__}: {e}") from e

        if not response.text or not response.text.strip():
            raise GenerationError(
                ErrorClassification.TRANSIENT, f"{self.model_id} returned an empty completion"
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        usage = dict(response.usage)
        usage.setdefault("duration_ms", duration_ms)
        logger.info(f"Generated {len(response.text)} chars with {self.model_id} in {duration_ms}ms")
        return GeneratedText(text=response.text, model=self.model_id, usage=usage)
