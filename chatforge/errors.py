"""Exception hierarchy for chatforge workflows."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorClassification(str, Enum):
    """Whether a failed step is worth retrying."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ChatforgeError(Exception):
    """Base class for all chatforge errors."""


class StepError(ChatforgeError):
    """A step-level failure reported to the orchestrator.

    Only the orchestrator decides whether to retry; the classification is a
    hint describing whether another attempt could succeed.
    """

    def __init__(
        self,
        message: str,
        classification: ErrorClassification = ErrorClassification.PERMANENT,
    ) -> None:
        super().__init__(message)
        self.classification = ErrorClassification(classification)

    @property
    def is_transient(self) -> bool:
        return self.classification is ErrorClassification.TRANSIENT


class ExtractionError(StepError):
    """URL extraction is total; kept so every step has an error type."""


class ScrapeError(StepError):
    """Scraping failed for ``url`` or, when ``url`` is ``None``, for every URL."""

    def __init__(
        self,
        reason: str,
        url: Optional[str] = None,
        classification: ErrorClassification = ErrorClassification.TRANSIENT,
    ) -> None:
        message = f"{url}: {reason}" if url else reason
        super().__init__(message, classification)
        self.url = url
        self.reason = reason


class GenerationError(StepError):
    """The language-model provider did not return usable text."""

    def __init__(self, classification: ErrorClassification, detail: str) -> None:
        super().__init__(detail, classification)
        self.detail = detail


class WorkflowAbortedError(ChatforgeError):
    """A run stopped at ``step_name`` and will not execute later steps."""

    def __init__(
        self,
        step_name: Optional[str],
        cause: BaseException | str,
        retry_exhausted: bool = False,
    ) -> None:
        self.step_name = step_name
        self.cause = cause
        self.retry_exhausted = retry_exhausted
        prefix = f"step {step_name}" if step_name else "workflow"
        if retry_exhausted:
            message = f"{prefix} failed after exhausting retries: {cause}"
        else:
            message = f"{prefix} failed: {cause}"
        super().__init__(message)


class WorkflowCancelledError(WorkflowAbortedError):
    """The run was cancelled before reaching a terminal state."""

    def __init__(self, step_name: Optional[str], reason: str = "cancelled") -> None:
        super().__init__(step_name, reason)
        self.reason = reason


class ActiveRunExistsError(ChatforgeError):
    """A queued or running run already exists for the message."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} already has an active run")
        self.message_id = message_id


class RunNotFoundError(ChatforgeError):
    """No run is stored under the given id."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class DuplicateRunError(ChatforgeError):
    """A run with the same ``run_id`` is already stored."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} already exists")
        self.run_id = run_id


class LeaseLostError(ChatforgeError):
    """Another owner took over the run after this owner's lease expired."""

    def __init__(self, run_id: str, owner_id: str) -> None:
        super().__init__(f"Run {run_id} is no longer leased by {owner_id}")
        self.run_id = run_id
        self.owner_id = owner_id
