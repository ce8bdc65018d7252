"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import WorkflowDefinition
from ..utils.clock import ensure_utc, utcnow
from .models import ExecutionStatus, WorkflowExecution
from .repository import WorkflowRepository


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
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                object_type TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                evaluation_order INTEGER NOT NULL DEFAULT 0,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                object_type TEXT NOT NULL,
                record_id TEXT,
                status TEXT NOT NULL,
                wait_type TEXT,
                next_run_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_next_run
            ON workflow_executions (next_run_at) WHERE status = 'waiting'
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_record
            ON workflow_executions (object_type, record_id)
            """
        )

    @staticmethod
    def _executions(rows: list[Any]) -> list[WorkflowExecution]:
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    async def _upsert_definition(
        self, conn: asyncpg.Connection, definition: WorkflowDefinition
    ) -> None:
        await conn.execute(
            """
            INSERT INTO workflows
                (id, object_type, trigger_type, is_active, evaluation_order, data)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            ON CONFLICT (id) DO UPDATE SET
                object_type = EXCLUDED.object_type,
                trigger_type = EXCLUDED.trigger_type,
                is_active = EXCLUDED.is_active,
                evaluation_order = EXCLUDED.evaluation_order,
                data = EXCLUDED.data
            """,
            definition.id,
            definition.object_type.value,
            definition.trigger_type.value,
            definition.is_active,
            definition.evaluation_order,
            definition.model_dump_json(),
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await self._upsert_definition(conn, definition)
        finally:
            await conn.close()

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["data"])

    async def list_definitions(
        self, object_type: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data::text AS data FROM workflows
                WHERE ($1::text IS NULL OR object_type = $1)
                  AND (NOT $2 OR is_active)
                ORDER BY evaluation_order, id
                """,
                getattr(object_type, "value", object_type),
                active_only,
            )
        finally:
            await conn.close()
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    async def record_trigger(self, workflow_id: str, at: datetime) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT data::text AS data FROM workflows WHERE id = $1 FOR UPDATE",
                    workflow_id,
                )
                if not row:
                    return
                definition = WorkflowDefinition.model_validate_json(row["data"])
                definition.execution_count += 1
                definition.last_executed_at = at
                await self._upsert_definition(conn, definition)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_executions
                    (id, workflow_id, object_type, record_id, status, wait_type,
                     next_run_at, started_at, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                """,
                execution.id,
                execution.workflow_id,
                execution.object_type,
                execution.record_id,
                execution.status.value,
                execution.wait_type,
                ensure_utc(execution.next_run_at) if execution.next_run_at else None,
                ensure_utc(execution.started_at),
                execution.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM workflow_executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["data"])

    async def save_execution(self, execution: WorkflowExecution) -> None:
        execution.updated_at = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflow_executions
                SET status = $1, wait_type = $2, next_run_at = $3, data = $4::jsonb
                WHERE id = $5
                """,
                execution.status.value,
                execution.wait_type,
                ensure_utc(execution.next_run_at) if execution.next_run_at else None,
                execution.model_dump_json(),
                execution.id,
            )
        finally:
            await conn.close()

    async def transition_status(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
    ) -> bool:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT data::text AS data FROM workflow_executions
                WHERE id = $1 AND status = $2
                """,
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
            result = await conn.execute(
                """
                UPDATE workflow_executions
                SET status = $1, wait_type = NULL, next_run_at = NULL, data = $2::jsonb
                WHERE id = $3 AND status = $4
                """,
                new.value,
                execution.model_dump_json(),
                execution_id,
                expected.value,
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data::text AS data FROM workflow_executions
                WHERE status = 'waiting' AND wait_type = 'delay' AND next_run_at <= $1
                ORDER BY next_run_at
                LIMIT $2
                """,
                ensure_utc(now),
                limit,
            )
        finally:
            await conn.close()
        return self._executions(rows)

    async def list_field_waits(
        self, object_type: str, record_id: str
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data::text AS data FROM workflow_executions
                WHERE status = 'waiting' AND wait_type = 'field_change'
                  AND object_type = $1 AND record_id = $2
                """,
                getattr(object_type, "value", object_type),
                str(record_id),
            )
        finally:
            await conn.close()
        return self._executions(rows)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data::text AS data FROM workflow_executions
                WHERE ($1::text IS NULL OR status = $1)
                  AND ($2::text IS NULL OR workflow_id = $2)
                ORDER BY started_at DESC
                LIMIT $3
                """,
                ExecutionStatus(status).value if status is not None else None,
                workflow_id,
                limit,
            )
        finally:
            await conn.close()
        return self._executions(rows)

    async def latest_execution_for_record(
        self, workflow_id: str, record_id: str
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT data::text AS data FROM workflow_executions
                WHERE workflow_id = $1 AND record_id = $2
                ORDER BY started_at DESC
                LIMIT 1
                """,
                workflow_id,
                str(record_id),
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["data"])
