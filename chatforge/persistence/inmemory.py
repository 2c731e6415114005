"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, Optional, Tuple

from ..constants import STEP_ORDER
from ..errors import ActiveRunExistsError, DuplicateRunError, RunNotFoundError
from .models import (
    ACTIVE_RUN_STATUSES,
    MessageState,
    MessageStatus,
    RunStatus,
    StepRecord,
    StepStatus,
    WorkflowRun,
    lease_is_held,
    utcnow,
)
from .repository import WorkflowRepository


def _step_sort_key(record: StepRecord) -> int:
    try:
        return STEP_ORDER.index(record.step_name)
    except ValueError:
        return len(STEP_ORDER)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[Tuple[str, str], StepRecord] = {}
        self._messages: Dict[str, MessageState] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        async with self._lock:
            if run.run_id in self._runs:
                raise DuplicateRunError(run.run_id)
            for existing in self._runs.values():
                if (
                    existing.message_id == run.message_id
                    and existing.status in ACTIVE_RUN_STATUSES
                ):
                    raise ActiveRunExistsError(run.message_id)
            self._runs[run.run_id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def get_latest_run(self, message_id: str) -> WorkflowRun | None:
        # dict preserves insertion order, so the last match is the newest
        latest = None
        for run in self._runs.values():
            if run.message_id == message_id:
                latest = run
        return latest.model_copy(deep=True) if latest else None

    async def update_run_status(self, run_id: str, status: RunStatus) -> WorkflowRun:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if not run.status.is_terminal:
                run.status = status
                if status is RunStatus.RUNNING and run.started_at is None:
                    run.started_at = utcnow()
            return run.model_copy(deep=True)

    async def claim_run(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> WorkflowRun:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            now = utcnow()
            if not run.status.is_terminal and not lease_is_held(run, owner_id, now):
                run.status = RunStatus.RUNNING
                if run.started_at is None:
                    run.started_at = now
                run.owner_id = owner_id
                run.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return run.model_copy(deep=True)

    async def renew_lease(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status.is_terminal or run.owner_id != owner_id:
                return False
            run.lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
            return True

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> WorkflowRun:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            now = utcnow()
            held = owner_id is not None and lease_is_held(run, owner_id, now)
            if not run.status.is_terminal and not held:
                run.status = status
                run.error = error
                run.completed_at = now
            return run.model_copy(deep=True)

    async def list_runs(self) -> list[WorkflowRun]:
        return [run.model_copy(deep=True) for run in self._runs.values()]

    async def list_incomplete_runs(self) -> list[WorkflowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if run.status in ACTIVE_RUN_STATUSES
        ]

    # ------------------------------------------------------------------
    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        record = self._steps.get((run_id, step_name))
        return record.model_copy(deep=True) if record else None

    async def put_step(self, record: StepRecord, force: bool = False) -> StepRecord:
        key = (record.run_id, record.step_name)
        async with self._lock:
            current = self._steps.get(key)
            if (
                current is not None
                and current.status is StepStatus.SUCCEEDED
                and not force
            ):
                return current.model_copy(deep=True)
            self._steps[key] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        records = [r for (rid, _), r in self._steps.items() if rid == run_id]
        return [r.model_copy(deep=True) for r in sorted(records, key=_step_sort_key)]

    # ------------------------------------------------------------------
    async def save_message(self, message: MessageState) -> None:
        self._messages[message.message_id] = message.model_copy(deep=True)

    async def set_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        content: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        message = self._messages.get(message_id)
        if message is None:
            message = MessageState(message_id=message_id)
            self._messages[message_id] = message
        message.status = status
        message.content = content
        message.error = error
        message.updated_at = utcnow()

    async def get_message(self, message_id: str) -> MessageState | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None
