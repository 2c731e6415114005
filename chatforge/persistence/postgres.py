"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Optional

import asyncpg

from ..constants import STEP_ORDER
from ..errors import ActiveRunExistsError, DuplicateRunError, RunNotFoundError
from .models import (
    MessageState,
    MessageStatus,
    RunStatus,
    StepRecord,
    WorkflowRun,
    utcnow,
)
from .repository import WorkflowRepository

_RUN_COLUMNS = (
    "run_id, message_id, conversation_id, input_text, status, error, "
    "created_at, started_at, completed_at, owner_id, lease_expires_at"
)
_STEP_COLUMNS = (
    "run_id, step_name, input_fingerprint, status, output, error, attempt, "
    "started_at, completed_at"
)
_MESSAGE_COLUMNS = (
    "message_id, conversation_id, text, status, content, error, updated_at"
)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                seq BIGSERIAL,
                run_id TEXT PRIMARY KEY,
                message_id TEXT NOT NULL,
                conversation_id TEXT,
                input_text TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                owner_id TEXT,
                lease_expires_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            ALTER TABLE workflow_runs
                ADD COLUMN IF NOT EXISTS owner_id TEXT,
                ADD COLUMN IF NOT EXISTS lease_expires_at TIMESTAMPTZ
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS workflow_runs_one_active
            ON workflow_runs (message_id)
            WHERE status IN ('queued', 'running')
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                input_fingerprint TEXT NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                error TEXT,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                conversation_id TEXT,
                text TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                content TEXT,
                error TEXT,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            input_text=row["input_text"],
            status=RunStatus(row["status"]),
            error=row["error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            owner_id=row["owner_id"],
            lease_expires_at=row["lease_expires_at"],
        )

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            input_fingerprint=row["input_fingerprint"],
            status=row["status"],
            output=json.loads(row["output"]) if row["output"] else None,
            error=row["error"],
            attempt=row["attempt"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    async def _require_run(self, run_id: str) -> WorkflowRun:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
                run.run_id,
                run.message_id,
                run.conversation_id,
                run.input_text,
                run.status.value,
                run.error,
                run.created_at,
                run.started_at,
                run.completed_at,
                run.owner_id,
                run.lease_expires_at,
            )
        except asyncpg.UniqueViolationError as exc:
            if exc.constraint_name == "workflow_runs_one_active":
                raise ActiveRunExistsError(run.message_id) from exc
            raise DuplicateRunError(run.run_id) from exc
        finally:
            await conn.close()
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = $1",
                run_id,
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def get_latest_run(self, message_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE message_id = $1 "
                "ORDER BY created_at DESC, seq DESC LIMIT 1",
                message_id,
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def update_run_status(self, run_id: str, status: RunStatus) -> WorkflowRun:
        started_at = utcnow() if status is RunStatus.RUNNING else None
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflow_runs
                SET status = $1, started_at = COALESCE(started_at, $2)
                WHERE run_id = $3 AND status IN ('queued', 'running')
                """,
                status.value,
                started_at,
                run_id,
            )
        finally:
            await conn.close()
        return await self._require_run(run_id)

    async def claim_run(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> WorkflowRun:
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflow_runs
                SET status = 'running', started_at = COALESCE(started_at, $1),
                    owner_id = $2, lease_expires_at = $3
                WHERE run_id = $4 AND status IN ('queued', 'running')
                  AND (owner_id IS NULL OR owner_id = $2
                       OR lease_expires_at IS NULL OR lease_expires_at <= $1)
                """,
                now,
                owner_id,
                now + timedelta(seconds=lease_seconds),
                run_id,
            )
        finally:
            await conn.close()
        return await self._require_run(run_id)

    async def renew_lease(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflow_runs SET lease_expires_at = $1
                WHERE run_id = $2 AND owner_id = $3
                  AND status IN ('queued', 'running')
                """,
                utcnow() + timedelta(seconds=lease_seconds),
                run_id,
                owner_id,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result == "UPDATE 1"

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> WorkflowRun:
        query = """
            UPDATE workflow_runs
            SET status = $1, error = $2, completed_at = $3
            WHERE run_id = $4 AND status IN ('queued', 'running')
        """
        params: list[Any] = [status.value, error, utcnow(), run_id]
        if owner_id is not None:
            query += """
              AND (owner_id IS NULL OR owner_id = $5
                   OR lease_expires_at IS NULL OR lease_expires_at <= $3)
            """
            params.append(owner_id)
        conn = await self._connect()
        try:
            await conn.execute(query, *params)
        finally:
            await conn.close()
        return await self._require_run(run_id)

    async def list_runs(self) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY created_at, seq"
            )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    async def list_incomplete_runs(self) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
                "WHERE status IN ('queued', 'running') ORDER BY created_at, seq"
            )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    # ------------------------------------------------------------------
    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = $1 AND step_name = $2",
                run_id,
                step_name,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def put_step(self, record: StepRecord, force: bool = False) -> StepRecord:
        query = f"""
            INSERT INTO step_records ({_STEP_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (run_id, step_name) DO UPDATE SET
                input_fingerprint = EXCLUDED.input_fingerprint,
                status = EXCLUDED.status,
                output = EXCLUDED.output,
                error = EXCLUDED.error,
                attempt = EXCLUDED.attempt,
                started_at = EXCLUDED.started_at,
                completed_at = EXCLUDED.completed_at
        """
        if not force:
            query += " WHERE step_records.status <> 'succeeded'"
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    query,
                    record.run_id,
                    record.step_name,
                    record.input_fingerprint,
                    record.status.value,
                    json.dumps(record.output) if record.output is not None else None,
                    record.error,
                    record.attempt,
                    record.started_at,
                    record.completed_at,
                )
                row = await conn.fetchrow(
                    f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = $1 AND step_name = $2",
                    record.run_id,
                    record.step_name,
                )
        finally:
            await conn.close()
        return self._row_to_step(row)

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = $1",
                run_id,
            )
        finally:
            await conn.close()
        steps = [self._row_to_step(r) for r in rows]
        steps.sort(
            key=lambda s: STEP_ORDER.index(s.step_name)
            if s.step_name in STEP_ORDER
            else len(STEP_ORDER)
        )
        return steps

    # ------------------------------------------------------------------
    async def save_message(self, message: MessageState) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (message_id) DO UPDATE SET
                    conversation_id = EXCLUDED.conversation_id,
                    text = EXCLUDED.text,
                    status = EXCLUDED.status,
                    content = EXCLUDED.content,
                    error = EXCLUDED.error,
                    updated_at = EXCLUDED.updated_at
                """,
                message.message_id,
                message.conversation_id,
                message.text,
                message.status.value,
                message.content,
                message.error,
                message.updated_at,
            )
        finally:
            await conn.close()

    async def set_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        content: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES ($1, NULL, '', $2, $3, $4, $5)
                ON CONFLICT (message_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    content = EXCLUDED.content,
                    error = EXCLUDED.error,
                    updated_at = EXCLUDED.updated_at
                """,
                message_id,
                status.value,
                content,
                error,
                utcnow(),
            )
        finally:
            await conn.close()

    async def get_message(self, message_id: str) -> MessageState | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = $1",
                message_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return MessageState(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            text=row["text"],
            status=MessageStatus(row["status"]),
            content=row["content"],
            error=row["error"],
            updated_at=row["updated_at"],
        )
