"""Data models for persisted workflow execution state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class FailureCode(str, Enum):
    """Machine-readable reason attached to failed executions."""

    EVALUATION_ERROR = "evaluation_error"
    EXECUTOR_ERROR = "executor_error"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    MISSING_STEP = "missing_step"
    MISSING_WORKFLOW = "missing_workflow"


class DelayWait(BaseModel):
    type: Literal["delay"] = "delay"
    resume_at: datetime


class FieldChangeWait(BaseModel):
    """Resume when ``field`` on the triggering record equals ``expected_value``.

    A ``None`` expected value resumes on any change of the field.
    """

    type: Literal["field_change"] = "field_change"
    field: str
    expected_value: Any = None


WaitingFor = Annotated[Union[DelayWait, FieldChangeWait], Field(discriminator="type")]


class HistoryEntry(BaseModel):
    """One audit event of an execution."""

    step_id: Optional[str] = None
    step_kind: Optional[str] = None
    event: str
    status: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utcnow)


class WorkflowExecution(BaseModel):
    """Persisted state of one workflow run against one record."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    object_type: str
    record_id: Optional[str] = None
    tenant_id: Optional[str] = None
    trigger_type: str = "manual"
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    record: Dict[str, Any] = Field(default_factory=dict)
    waiting_for: Optional[WaitingFor] = None
    next_run_at: Optional[datetime] = None
    in_flight_step_id: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    error: Optional[str] = None
    failure_code: Optional[FailureCode] = None
    retry_count: int = 0
    triggered_at: datetime = Field(default_factory=utcnow)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def wait_type(self) -> Optional[str]:
        return self.waiting_for.type if self.waiting_for is not None else None

    def suspend(self, waiting_for: WaitingFor, next_step_id: Optional[str]) -> None:
        """Move to ``waiting``; ``next_run_at`` is only set for delays."""
        self.status = ExecutionStatus.WAITING
        self.waiting_for = waiting_for
        self.current_step_id = next_step_id
        self.next_run_at = (
            waiting_for.resume_at if isinstance(waiting_for, DelayWait) else None
        )
