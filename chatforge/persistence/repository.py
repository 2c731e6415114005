"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from .models import (
    MessageState,
    MessageStatus,
    RunStatus,
    StepRecord,
    WorkflowRun,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    One backend holds three things: workflow runs, the step memoization log
    and the message status read model. Writes to a ``(run_id, step_name)``
    key are linearizable and a ``succeeded`` step record is never replaced
    unless ``force`` is passed.
    """

    # runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run.

        Raises:
            ActiveRunExistsError: If the message already has a queued or
                running run.
            DuplicateRunError: If ``run.run_id`` is already stored.
        """

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve the run by id."""

    async def get_latest_run(self, message_id: str) -> WorkflowRun | None:
        """Return the most recently created run for ``message_id``."""

    async def update_run_status(self, run_id: str, status: RunStatus) -> WorkflowRun:
        """Move a non-terminal run to ``status``; terminal runs are returned unchanged."""

    async def claim_run(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> WorkflowRun:
        """Atomically lease a non-terminal run to ``owner_id`` and mark it running.

        The claim succeeds when the run is unowned, already owned by
        ``owner_id``, or its lease has expired. The stored run is returned
        either way; callers compare ``owner_id`` to learn whether they won.
        """

    async def renew_lease(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> bool:
        """Extend ``owner_id``'s lease; ``False`` when the run is no longer theirs."""

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Mark the run terminal exactly once; later calls are no-ops.

        With ``owner_id`` the update is skipped while another owner holds an
        unexpired lease.
        """

    async def list_runs(self) -> list[WorkflowRun]:
        """Return all persisted runs."""

    async def list_incomplete_runs(self) -> list[WorkflowRun]:
        """Return runs still queued or running."""

    # step memoization log
    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        """Return the record stored for the step, if any."""

    async def put_step(self, record: StepRecord, force: bool = False) -> StepRecord:
        """Write ``record`` and return what is stored for its key afterwards."""

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """Return the run's step records in pipeline order."""

    # message status read model
    async def save_message(self, message: MessageState) -> None:
        """Insert or replace the message state."""

    async def set_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        content: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update the observable status of a message."""

    async def get_message(self, message_id: str) -> MessageState | None:
        """Retrieve the message state by id."""
