"""Workflow definition contracts for practiceflow."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class ObjectType(str, Enum):
    """Domain objects a workflow can attach to."""

    LEAD = "lead"
    MEETING = "meeting"
    PAYMENT = "payment"
    INVOICE = "invoice"
    SERVICE = "service"
    DOCUMENT = "document"
    CONTRACT = "contract"
    INTAKE_FORM = "intake_form"


class TriggerType(str, Enum):
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    FIELD_CHANGED = "field_changed"
    MANUAL = "manual"


class EventKind(str, Enum):
    """Kinds of record mutation reported to the trigger dispatcher."""

    CREATED = "created"
    UPDATED = "updated"


class ReentryMode(str, Enum):
    """Whether a record may enter the same workflow more than once."""

    ALLOW_ALL = "allow_all"
    NO_REENTRY = "no_reentry"
    REENTRY_AFTER_EXIT = "reentry_after_exit"
    REENTRY_AFTER_DAYS = "reentry_after_days"


class TriggerConfig(BaseModel):
    """Trigger settings; ``field`` and the value filters apply to field changes."""

    field: Optional[str] = None
    from_value: Optional[Any] = None
    to_value: Optional[Any] = None


# ----------------------------------------------------------------------
# Steps


class StepBase(BaseModel):
    id: str
    name: Optional[str] = None

    def successors(self) -> List[str]:
        """Ids of the steps this step can advance to."""
        next_step_id = getattr(self, "next_step_id", None)
        return [next_step_id] if next_step_id else []


class SendEmailStep(StepBase):
    kind: Literal["send_email"] = "send_email"
    template_id: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    to_type: Literal["record_field", "custom"] = "record_field"
    to_field: str = "email"
    to_address: Optional[str] = None
    next_step_id: Optional[str] = None


class SendSmsStep(StepBase):
    kind: Literal["send_sms"] = "send_sms"
    template_id: Optional[str] = None
    body: Optional[str] = None
    to_type: Literal["record_field", "custom"] = "record_field"
    to_field: str = "phone"
    to_address: Optional[str] = None
    next_step_id: Optional[str] = None


class SendMessageStep(StepBase):
    """In-app message posted to the record's client portal."""

    kind: Literal["send_message"] = "send_message"
    body: str
    next_step_id: Optional[str] = None


class CreateTaskStep(StepBase):
    kind: Literal["create_task"] = "create_task"
    title: str = "Action item from workflow"
    action_type: str = "custom"
    priority: Optional[int] = None
    due_days: Optional[int] = None
    assigned_to: Optional[str] = None
    next_step_id: Optional[str] = None


class UpdateFieldStep(StepBase):
    kind: Literal["update_field"] = "update_field"
    field: str
    value: Any = None
    next_step_id: Optional[str] = None


class CreateRecordStep(StepBase):
    kind: Literal["create_record"] = "create_record"
    record_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    result_variable: Optional[str] = None
    next_step_id: Optional[str] = None


class SetVariableStep(StepBase):
    kind: Literal["set_variable"] = "set_variable"
    variable: str
    value: Any = None
    next_step_id: Optional[str] = None


class WebhookStep(StepBase):
    kind: Literal["webhook"] = "webhook"
    url: str
    method: Literal["POST", "PUT", "GET"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Any = None
    next_step_id: Optional[str] = None


class BranchStep(StepBase):
    """Decision node choosing between two successors."""

    kind: Literal["branch"] = "branch"
    condition: Any
    true_next_step_id: Optional[str] = None
    false_next_step_id: Optional[str] = None
    result_variable: Optional[str] = None

    def successors(self) -> List[str]:
        return [s for s in (self.true_next_step_id, self.false_next_step_id) if s]


class LoopStep(StepBase):
    """Repeats ``body_step_id`` until the counter or condition says stop.

    The body is expected to lead back to this step.
    """

    kind: Literal["loop"] = "loop"
    counter_variable: str
    max_iterations: int = Field(ge=1)
    while_condition: Any = None
    body_step_id: str
    next_step_id: Optional[str] = None

    def successors(self) -> List[str]:
        return [s for s in (self.body_step_id, self.next_step_id) if s]


class WaitDuration(BaseModel):
    days: float = 0
    hours: float = 0
    minutes: float = 0

    def to_timedelta(self) -> timedelta:
        return timedelta(days=self.days, hours=self.hours, minutes=self.minutes)


class WaitStep(StepBase):
    """Pause until a delay elapses or a record field takes a value.

    Exactly one of ``duration``, ``until_field`` (a record field holding the
    resume timestamp) or ``field`` (wait for a field change) must be set.
    """

    kind: Literal["wait"] = "wait"
    duration: Optional[WaitDuration] = None
    until_field: Optional[str] = None
    field: Optional[str] = None
    expected_value: Any = None
    next_step_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_wait_mode(self) -> "WaitStep":
        modes = [m for m in (self.duration, self.until_field, self.field) if m is not None]
        if len(modes) != 1:
            raise ValueError(
                f"wait step {self.id!r} needs exactly one of duration, until_field or field"
            )
        return self


class EndStep(StepBase):
    kind: Literal["end"] = "end"


STEP_TYPES = (
    SendEmailStep,
    SendSmsStep,
    SendMessageStep,
    CreateTaskStep,
    UpdateFieldStep,
    CreateRecordStep,
    SetVariableStep,
    WebhookStep,
    BranchStep,
    LoopStep,
    WaitStep,
    EndStep,
)

STEP_KINDS = tuple(t.model_fields["kind"].default for t in STEP_TYPES)

# Steps whose executors touch external collaborators.
SIDE_EFFECT_KINDS = frozenset(
    {
        "send_email",
        "send_sms",
        "send_message",
        "create_task",
        "update_field",
        "create_record",
        "webhook",
    }
)

Step = Annotated[
    Union[
        SendEmailStep,
        SendSmsStep,
        SendMessageStep,
        CreateTaskStep,
        UpdateFieldStep,
        CreateRecordStep,
        SetVariableStep,
        WebhookStep,
        BranchStep,
        LoopStep,
        WaitStep,
        EndStep,
    ],
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# Definitions


class WorkflowDefinition(BaseModel):
    """A workflow attached to one object type and one trigger.

    Steps reference each other by id, so the graph may contain cycles;
    lookups go through :meth:`step_map`.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    tenant_id: Optional[str] = None
    object_type: ObjectType
    trigger_type: TriggerType
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    steps: List[Step] = Field(default_factory=list)
    start_step_id: Optional[str] = None
    is_active: bool = True
    entry_criteria: Optional[Dict[str, Any]] = None
    reentry_mode: ReentryMode = ReentryMode.ALLOW_ALL
    reentry_wait_days: Optional[int] = None
    evaluation_order: int = 0
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _index_steps(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id {step.id!r}")
            seen.add(step.id)
        if self.start_step_id is None and self.steps:
            self.start_step_id = self.steps[0].id
        return self

    def step_map(self) -> Dict[str, Step]:
        return {step.id: step for step in self.steps}

    def get_step(self, step_id: str) -> Optional[Step]:
        return self.step_map().get(step_id)


class ExecutionMessage(BaseModel):
    """Envelope used to hand an execution to a worker over a transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    workflow_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ExecutionMessage":
        return cls.model_validate_json(data)
