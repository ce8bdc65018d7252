"""Repository abstraction for workflow definitions and executions."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import WorkflowDefinition
from .models import ExecutionStatus, WorkflowExecution


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends."""

    # Definitions -------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id."""

    async def list_definitions(
        self,
        object_type: Optional[str] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        """Return definitions ordered by ``evaluation_order``."""

    async def record_trigger(self, workflow_id: str, at: datetime) -> None:
        """Bump the definition's execution counter and last-executed time."""

    # Executions --------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Overwrite the stored execution with ``execution``."""

    async def transition_status(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
    ) -> bool:
        """Atomically move ``expected`` to ``new``, clearing any wait.

        Returns ``False`` when the stored status no longer equals
        ``expected``; exactly one concurrent caller can win.
        """

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        """Waiting executions on a delay whose ``next_run_at <= now``."""

    async def list_field_waits(
        self, object_type: str, record_id: str
    ) -> list[WorkflowExecution]:
        """Waiting executions of one record suspended on a field change."""

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        """Return executions, most recently started first."""

    async def latest_execution_for_record(
        self, workflow_id: str, record_id: str
    ) -> WorkflowExecution | None:
        """Most recently started execution of ``workflow_id`` for a record."""
