"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from ..contracts import WorkflowDefinition
from ..utils.clock import ensure_utc, utcnow
from .models import ExecutionStatus, WorkflowExecution
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Models are copied on the way in and
    out so callers only observe what they explicitly save.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(
        self, object_type: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        wanted = getattr(object_type, "value", object_type)
        found = [
            d.model_copy(deep=True)
            for d in self._definitions.values()
            if (wanted is None or d.object_type.value == wanted)
            and (not active_only or d.is_active)
        ]
        return sorted(found, key=lambda d: d.evaluation_order)

    async def record_trigger(self, workflow_id: str, at: datetime) -> None:
        definition = self._definitions.get(workflow_id)
        if definition:
            definition.execution_count += 1
            definition.last_executed_at = at

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def save_execution(self, execution: WorkflowExecution) -> None:
        execution.updated_at = utcnow()
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def transition_status(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
    ) -> bool:
        # No await between check and set, so this is atomic on the event loop.
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != expected:
            return False
        execution.status = new
        execution.waiting_for = None
        execution.next_run_at = None
        execution.updated_at = utcnow()
        return True

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        now = ensure_utc(now)
        due = [
            e
            for e in self._executions.values()
            if e.status == ExecutionStatus.WAITING
            and e.wait_type == "delay"
            and e.next_run_at is not None
            and ensure_utc(e.next_run_at) <= now
        ]
        due.sort(key=lambda e: ensure_utc(e.next_run_at))
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def list_field_waits(
        self, object_type: str, record_id: str
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.status == ExecutionStatus.WAITING
            and e.wait_type == "field_change"
            and e.object_type == getattr(object_type, "value", object_type)
            and e.record_id == str(record_id)
        ]

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        found = [
            e
            for e in self._executions.values()
            if (status is None or e.status == status)
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
        found.sort(key=lambda e: ensure_utc(e.started_at), reverse=True)
        if limit is not None:
            found = found[:limit]
        return [e.model_copy(deep=True) for e in found]

    async def latest_execution_for_record(
        self, workflow_id: str, record_id: str
    ) -> WorkflowExecution | None:
        matches = [
            e
            for e in self._executions.values()
            if e.workflow_id == workflow_id and e.record_id == str(record_id)
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda e: ensure_utc(e.started_at))
        return latest.model_copy(deep=True)
