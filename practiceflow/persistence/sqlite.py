"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import WorkflowDefinition
from ..utils.clock import ensure_utc, utcnow
from .models import ExecutionStatus, WorkflowExecution
from .repository import WorkflowRepository


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so lexical order matches time order.
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f")


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Queryable columns are duplicated next to a JSON ``data`` column holding
    the full model.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                object_type TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                evaluation_order INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                object_type TEXT NOT NULL,
                record_id TEXT,
                status TEXT NOT NULL,
                wait_type TEXT,
                next_run_at TEXT,
                started_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_next_run "
            "ON workflow_executions (status, next_run_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_record "
            "ON workflow_executions (object_type, record_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _write_definition(self, definition: WorkflowDefinition) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO workflows
                (id, object_type, trigger_type, is_active, evaluation_order, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            definition.id,
            definition.object_type.value,
            definition.trigger_type.value,
            int(definition.is_active),
            definition.evaluation_order,
            definition.model_dump_json(),
        )

    def _bump_definition(self, workflow_id: str, at: datetime) -> None:
        row = self._fetchone("SELECT data FROM workflows WHERE id = ?", workflow_id)
        if not row:
            return
        definition = WorkflowDefinition.model_validate_json(row["data"])
        definition.execution_count += 1
        definition.last_executed_at = at
        self._write_definition(definition)

    def _write_execution(self, execution: WorkflowExecution, insert: bool) -> None:
        verb = "INSERT" if insert else "INSERT OR REPLACE"
        self._execute(
            f"""
            {verb} INTO workflow_executions
                (id, workflow_id, object_type, record_id, status, wait_type,
                 next_run_at, started_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            execution.id,
            execution.workflow_id,
            execution.object_type,
            execution.record_id,
            execution.status.value,
            execution.wait_type,
            _ts(execution.next_run_at),
            _ts(execution.started_at),
            execution.model_dump_json(),
        )

    def _transition(
        self, execution_id: str, expected: ExecutionStatus, new: ExecutionStatus
    ) -> bool:
        row = self._fetchone(
            "SELECT data FROM workflow_executions WHERE id = ? AND status = ?",
            execution_id,
            expected.value,
        )
        if not row:
            return False
        execution = WorkflowExecution.model_validate_json(row["data"])
        execution.status = new
        execution.waiting_for = None
        execution.next_run_at = None
        execution.updated_at = utcnow()
        # The status predicate makes this a compare-and-swap.
        updated = self._execute(
            """
            UPDATE workflow_executions
            SET status = ?, wait_type = NULL, next_run_at = NULL, data = ?
            WHERE id = ? AND status = ?
            """,
            new.value,
            execution.model_dump_json(),
            execution_id,
            expected.value,
        )
        return updated == 1

    @staticmethod
    def _executions(rows: list[sqlite3.Row]) -> list[WorkflowExecution]:
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(self._write_definition, definition)

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["data"])

    async def list_definitions(
        self, object_type: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        query = "SELECT data FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if object_type is not None:
            query += " AND object_type = ?"
            params.append(getattr(object_type, "value", object_type))
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY evaluation_order, id"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    async def record_trigger(self, workflow_id: str, at: datetime) -> None:
        await asyncio.to_thread(self._bump_definition, workflow_id, at)

    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(self._write_execution, execution, True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["data"])

    async def save_execution(self, execution: WorkflowExecution) -> None:
        execution.updated_at = utcnow()
        await asyncio.to_thread(self._write_execution, execution, False)

    async def transition_status(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
    ) -> bool:
        return await asyncio.to_thread(self._transition, execution_id, expected, new)

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT data FROM workflow_executions
            WHERE status = ? AND wait_type = 'delay' AND next_run_at <= ?
            ORDER BY next_run_at
            LIMIT ?
            """,
            ExecutionStatus.WAITING.value,
            _ts(now),
            limit,
        )
        return self._executions(rows)

    async def list_field_waits(
        self, object_type: str, record_id: str
    ) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT data FROM workflow_executions
            WHERE status = ? AND wait_type = 'field_change'
              AND object_type = ? AND record_id = ?
            """,
            ExecutionStatus.WAITING.value,
            getattr(object_type, "value", object_type),
            str(record_id),
        )
        return self._executions(rows)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        query = "SELECT data FROM workflow_executions WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(ExecutionStatus(status).value)
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return self._executions(rows)

    async def latest_execution_for_record(
        self, workflow_id: str, record_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT data FROM workflow_executions
            WHERE workflow_id = ? AND record_id = ?
            ORDER BY started_at DESC
            LIMIT 1
            """,
            workflow_id,
            str(record_id),
        )
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["data"])

    def close(self) -> None:
        self._conn.close()
