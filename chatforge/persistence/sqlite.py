"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

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

_UPSERT_STEP = f"""
    INSERT INTO step_records ({_STEP_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (run_id, step_name) DO UPDATE SET
        input_fingerprint = excluded.input_fingerprint,
        status = excluded.status,
        output = excluded.output,
        error = excluded.error,
        attempt = excluded.attempt,
        started_at = excluded.started_at,
        completed_at = excluded.completed_at
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # one connection shared by worker threads
        self._db_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                message_id TEXT NOT NULL,
                conversation_id TEXT,
                input_text TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                owner_id TEXT,
                lease_expires_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS workflow_runs_one_active
            ON workflow_runs (message_id)
            WHERE status IN ('queued', 'running')
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                input_fingerprint TEXT NOT NULL,
                status TEXT NOT NULL,
                output TEXT,
                error TEXT,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                conversation_id TEXT,
                text TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                content TEXT,
                error TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_run(self, run: WorkflowRun) -> None:
        try:
            self._execute(
                f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                run.run_id,
                run.message_id,
                run.conversation_id,
                run.input_text,
                run.status.value,
                run.error,
                _ts(run.created_at),
                _ts(run.started_at),
                _ts(run.completed_at),
                run.owner_id,
                _ts(run.lease_expires_at),
            )
        except sqlite3.IntegrityError as exc:
            # the partial index names message_id, the primary key names run_id
            if "workflow_runs.message_id" in str(exc):
                raise ActiveRunExistsError(run.message_id) from exc
            raise DuplicateRunError(run.run_id) from exc

    def _put_step(self, record: StepRecord, force: bool) -> sqlite3.Row:
        query = _UPSERT_STEP
        if not force:
            query += " WHERE step_records.status <> 'succeeded'"
        params = (
            record.run_id,
            record.step_name,
            record.input_fingerprint,
            record.status.value,
            json.dumps(record.output) if record.output is not None else None,
            record.error,
            record.attempt,
            _ts(record.started_at),
            _ts(record.completed_at),
        )
        # write and read back under one lock so the caller sees the winner
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            cur.execute(
                f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = ? AND step_name = ?",
                (record.run_id, record.step_name),
            )
            return cur.fetchone()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            input_text=row["input_text"],
            status=RunStatus(row["status"]),
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            owner_id=row["owner_id"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            input_fingerprint=row["input_fingerprint"],
            status=row["status"],
            output=json.loads(row["output"]) if row["output"] else None,
            error=row["error"],
            attempt=row["attempt"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MessageState:
        return MessageState(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            text=row["text"],
            status=MessageStatus(row["status"]),
            content=row["content"],
            error=row["error"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def _require_run(self, run_id: str) -> WorkflowRun:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # ------------------------------------------------------------------
    # Repository API: runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await asyncio.to_thread(self._insert_run, run)
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = ?",
            run_id,
        )
        return self._row_to_run(row) if row else None

    async def get_latest_run(self, message_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE message_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            message_id,
        )
        return self._row_to_run(row) if row else None

    async def update_run_status(self, run_id: str, status: RunStatus) -> WorkflowRun:
        started_at = _ts(utcnow()) if status is RunStatus.RUNNING else None
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs
            SET status = ?, started_at = COALESCE(started_at, ?)
            WHERE run_id = ? AND status IN ('queued', 'running')
            """,
            status.value,
            started_at,
            run_id,
        )
        return await self._require_run(run_id)

    async def claim_run(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> WorkflowRun:
        now = utcnow()
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs
            SET status = 'running', started_at = COALESCE(started_at, ?),
                owner_id = ?, lease_expires_at = ?
            WHERE run_id = ? AND status IN ('queued', 'running')
              AND (owner_id IS NULL OR owner_id = ?
                   OR lease_expires_at IS NULL OR lease_expires_at <= ?)
            """,
            _ts(now),
            owner_id,
            _ts(now + timedelta(seconds=lease_seconds)),
            run_id,
            owner_id,
            _ts(now),
        )
        return await self._require_run(run_id)

    async def renew_lease(
        self, run_id: str, owner_id: str, lease_seconds: float
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs SET lease_expires_at = ?
            WHERE run_id = ? AND owner_id = ? AND status IN ('queued', 'running')
            """,
            _ts(utcnow() + timedelta(seconds=lease_seconds)),
            run_id,
            owner_id,
        )
        return updated == 1

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        error: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> WorkflowRun:
        now = _ts(utcnow())
        query = """
            UPDATE workflow_runs
            SET status = ?, error = ?, completed_at = ?
            WHERE run_id = ? AND status IN ('queued', 'running')
        """
        params: list[Any] = [status.value, error, now, run_id]
        if owner_id is not None:
            query += """
              AND (owner_id IS NULL OR owner_id = ?
                   OR lease_expires_at IS NULL OR lease_expires_at <= ?)
            """
            params += [owner_id, now]
        await asyncio.to_thread(self._execute, query, *params)
        return await self._require_run(run_id)

    async def list_runs(self) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY created_at, rowid",
        )
        return [self._row_to_run(r) for r in rows]

    async def list_incomplete_runs(self) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
            "WHERE status IN ('queued', 'running') ORDER BY created_at, rowid",
        )
        return [self._row_to_run(r) for r in rows]

    # ------------------------------------------------------------------
    # Repository API: step memoization log
    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = ? AND step_name = ?",
            run_id,
            step_name,
        )
        return self._row_to_step(row) if row else None

    async def put_step(self, record: StepRecord, force: bool = False) -> StepRecord:
        row = await asyncio.to_thread(self._put_step, record, force)
        return self._row_to_step(row)

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = ?",
            run_id,
        )
        steps = [self._row_to_step(r) for r in rows]
        steps.sort(
            key=lambda s: STEP_ORDER.index(s.step_name)
            if s.step_name in STEP_ORDER
            else len(STEP_ORDER)
        )
        return steps

    # ------------------------------------------------------------------
    # Repository API: message status
    async def save_message(self, message: MessageState) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR REPLACE INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            message.message_id,
            message.conversation_id,
            message.text,
            message.status.value,
            message.content,
            message.error,
            _ts(message.updated_at),
        )

    async def set_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        content: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, NULL, '', ?, ?, ?, ?)
            ON CONFLICT (message_id) DO UPDATE SET
                status = excluded.status,
                content = excluded.content,
                error = excluded.error,
                updated_at = excluded.updated_at
            """,
            message_id,
            status.value,
            content,
            error,
            _ts(utcnow()),
        )

    async def get_message(self, message_id: str) -> MessageState | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = ?",
            message_id,
        )
        return self._row_to_message(row) if row else None
