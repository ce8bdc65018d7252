"""Step executors, one per step kind.

Each executor receives the step and a :class:`StepContext` and returns an
:class:`Advance`, :class:`Suspend` or :class:`Terminate`. Executors record
their own history entry; lifecycle markers are left to the engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from .capabilities import Capabilities
from .contracts import (
    STEP_KINDS,
    BranchStep,
    CreateRecordStep,
    CreateTaskStep,
    EndStep,
    LoopStep,
    SendEmailStep,
    SendMessageStep,
    SendSmsStep,
    SetVariableStep,
    Step,
    UpdateFieldStep,
    WaitStep,
    WebhookStep,
)
from .exceptions import EvaluationError, StepExecutionError, _jsonable
from .expressions import evaluate, evaluate_boolean, resolve_path, to_datetime
from .persistence.models import (
    DelayWait,
    ExecutionStatus,
    FieldChangeWait,
    HistoryEntry,
    WaitingFor,
)

logger = logging.getLogger(__name__)


class Advance(BaseModel):
    next_step_id: Optional[str] = None


class Suspend(BaseModel):
    waiting_for: WaitingFor
    next_step_id: Optional[str] = None


class Terminate(BaseModel):
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    reason: Optional[str] = None


StepResult = Union[Advance, Suspend, Terminate]


class HistoryLog:
    """Append-only handle on an execution's history."""

    def __init__(self, entries: List[HistoryEntry], now: datetime) -> None:
        self._entries = entries
        self._now = now

    def append(
        self,
        step: Optional[Step],
        event: str,
        status: str,
        **detail: Any,
    ) -> HistoryEntry:
        return self.marker(
            event,
            status,
            step_id=step.id if step is not None else None,
            step_kind=step.kind if step is not None else None,
            **detail,
        )

    def marker(
        self,
        event: str,
        status: str,
        step_id: Optional[str] = None,
        step_kind: Optional[str] = None,
        **detail: Any,
    ) -> HistoryEntry:
        """Append a lifecycle entry that need not belong to a resolved step."""
        entry = HistoryEntry(
            step_id=step_id,
            step_kind=step_kind,
            event=event,
            status=status,
            detail=_jsonable(detail),
            at=self._now,
        )
        self._entries.append(entry)
        return entry

    def completed(self, step: Step, **detail: Any) -> HistoryEntry:
        return self.append(step, "step_completed", "completed", **detail)

    def warning(self, step: Step, **detail: Any) -> HistoryEntry:
        return self.append(step, "step_completed", "warning", **detail)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class StepContext:
    execution_id: str
    object_type: str
    record_id: Optional[str]
    record: Dict[str, Any]
    variables: Dict[str, Any]
    history: HistoryLog
    capabilities: Capabilities
    now: datetime

    def evaluate(self, expression: Any) -> Any:
        return evaluate(expression, self.record, self.variables)

    def evaluate_boolean(self, expression: Any) -> bool:
        return evaluate_boolean(expression, self.record, self.variables)

    def template_context(self) -> Dict[str, Any]:
        return {
            "record": self.record,
            "vars": self.variables,
            "execution_id": self.execution_id,
        }


# ----------------------------------------------------------------------
# Notifications


def _recipient(step: Union[SendEmailStep, SendSmsStep], ctx: StepContext) -> Optional[str]:
    if step.to_type == "custom":
        value = ctx.evaluate(step.to_address) if step.to_address else None
    else:
        value = resolve_path(ctx.record, step.to_field)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


async def _notify(
    step: Union[SendEmailStep, SendSmsStep],
    ctx: StepContext,
    send: Callable[..., Awaitable[None]],
) -> StepResult:
    recipient = _recipient(step, ctx)
    if recipient is None:
        logger.warning(
            f"Execution {ctx.execution_id}: no recipient for step {step.id}"
        )
        ctx.history.warning(step, error="no recipient resolved")
        return Advance(next_step_id=step.next_step_id)

    context = ctx.template_context()
    if step.body is not None:
        context["body"] = ctx.evaluate(step.body)
    subject = getattr(step, "subject", None)
    if subject is not None:
        context["subject"] = ctx.evaluate(subject)

    try:
        await send(recipient, step.template_id, context)
    except Exception as exc:
        logger.warning(
            f"Execution {ctx.execution_id}: {step.kind} to {recipient} failed: {exc}"
        )
        ctx.history.warning(step, to=recipient, error=str(exc))
    else:
        ctx.history.completed(step, to=recipient, template_id=step.template_id)
    return Advance(next_step_id=step.next_step_id)


async def execute_send_email(step: SendEmailStep, ctx: StepContext) -> StepResult:
    return await _notify(step, ctx, ctx.capabilities.notifier.send_email)


async def execute_send_sms(step: SendSmsStep, ctx: StepContext) -> StepResult:
    return await _notify(step, ctx, ctx.capabilities.notifier.send_sms)


async def execute_send_message(step: SendMessageStep, ctx: StepContext) -> StepResult:
    if ctx.record_id is None:
        ctx.history.warning(step, error="execution has no record to message")
        return Advance(next_step_id=step.next_step_id)
    body = ctx.evaluate(step.body)
    try:
        await ctx.capabilities.notifier.send_portal_message(
            ctx.object_type, ctx.record_id, str(body), ctx.template_context()
        )
    except Exception as exc:
        logger.warning(f"Execution {ctx.execution_id}: portal message failed: {exc}")
        ctx.history.warning(step, error=str(exc))
    else:
        ctx.history.completed(step)
    return Advance(next_step_id=step.next_step_id)


# ----------------------------------------------------------------------
# Record mutations


async def execute_create_task(step: CreateTaskStep, ctx: StepContext) -> StepResult:
    task: Dict[str, Any] = {
        "title": str(ctx.evaluate(step.title)),
        "action_type": step.action_type,
        "priority": step.priority,
        "assigned_to": step.assigned_to,
        "workflow_execution_id": ctx.execution_id,
    }
    if step.due_days is not None:
        task["due_date"] = (ctx.now + timedelta(days=step.due_days)).date().isoformat()
    created = await ctx.capabilities.tasks.create_task(
        ctx.object_type, ctx.record_id, task
    )
    ctx.history.completed(step, task_id=created.get("id"), title=task["title"])
    return Advance(next_step_id=step.next_step_id)


async def execute_update_field(step: UpdateFieldStep, ctx: StepContext) -> StepResult:
    if ctx.record_id is None:
        raise StepExecutionError(f"Step {step.id} needs a record to update")
    value = ctx.evaluate(step.value)
    updated = await ctx.capabilities.records.update_fields(
        ctx.object_type, ctx.record_id, {step.field: value}
    )
    ctx.record.update(updated or {step.field: value})
    ctx.history.completed(step, field=step.field, value=value)
    return Advance(next_step_id=step.next_step_id)


async def execute_create_record(step: CreateRecordStep, ctx: StepContext) -> StepResult:
    data = ctx.evaluate(step.data)
    created = await ctx.capabilities.records.create_record(step.record_type, data)
    created_id = created.get("id")
    if step.result_variable:
        ctx.variables[step.result_variable] = created_id
    ctx.history.completed(step, record_type=step.record_type, record_id=created_id)
    return Advance(next_step_id=step.next_step_id)


async def execute_set_variable(step: SetVariableStep, ctx: StepContext) -> StepResult:
    value = ctx.evaluate(step.value)
    ctx.variables[step.variable] = value
    ctx.history.completed(step, variable=step.variable, value=value)
    return Advance(next_step_id=step.next_step_id)


async def execute_webhook(step: WebhookStep, ctx: StepContext) -> StepResult:
    url = str(ctx.evaluate(step.url))
    if step.payload is None:
        payload: Any = {
            "execution_id": ctx.execution_id,
            "object_type": ctx.object_type,
            "record_id": ctx.record_id,
            "record": ctx.record,
            "variables": ctx.variables,
        }
    else:
        payload = ctx.evaluate(step.payload)
    payload = _jsonable(payload)

    try:
        status_code = await ctx.capabilities.webhooks.send(
            url, payload, method=step.method, headers=step.headers
        )
    except Exception as exc:
        logger.warning(f"Execution {ctx.execution_id}: webhook {url} failed: {exc}")
        ctx.history.warning(step, url=url, error=str(exc))
        return Advance(next_step_id=step.next_step_id)

    if 200 <= status_code < 300:
        ctx.history.completed(step, url=url, status_code=status_code)
    else:
        logger.warning(
            f"Execution {ctx.execution_id}: webhook {url} returned {status_code}"
        )
        ctx.history.warning(
            step, url=url, status_code=status_code, error=f"HTTP {status_code}"
        )
    return Advance(next_step_id=step.next_step_id)


# ----------------------------------------------------------------------
# Control flow


async def execute_branch(step: BranchStep, ctx: StepContext) -> StepResult:
    outcome = ctx.evaluate_boolean(step.condition)
    if step.result_variable:
        ctx.variables[step.result_variable] = outcome
    next_step_id = step.true_next_step_id if outcome else step.false_next_step_id
    ctx.history.completed(step, outcome=outcome, next_step_id=next_step_id)
    return Advance(next_step_id=next_step_id)


async def execute_loop(step: LoopStep, ctx: StepContext) -> StepResult:
    previous = ctx.variables.get(step.counter_variable, 0)
    if isinstance(previous, bool) or not isinstance(previous, int):
        raise EvaluationError(
            f"Loop counter {step.counter_variable!r} is not an integer",
            expression={"var": step.counter_variable},
            operands=[previous],
        )
    iteration = previous + 1
    ctx.variables[step.counter_variable] = iteration

    keep_going = iteration <= step.max_iterations
    if keep_going and step.while_condition is not None:
        keep_going = ctx.evaluate_boolean(step.while_condition)

    if keep_going:
        ctx.history.completed(step, iteration=iteration, next_step_id=step.body_step_id)
        return Advance(next_step_id=step.body_step_id)

    ctx.variables.pop(step.counter_variable, None)
    ctx.history.completed(
        step, iterations=iteration - 1, exited=True, next_step_id=step.next_step_id
    )
    return Advance(next_step_id=step.next_step_id)


async def execute_wait(step: WaitStep, ctx: StepContext) -> StepResult:
    if step.field is not None:
        expected = ctx.evaluate(step.expected_value)
        waiting_for: WaitingFor = FieldChangeWait(field=step.field, expected_value=expected)
        ctx.history.append(
            step, "suspended", "waiting", wait="field_change", field=step.field,
            expected_value=expected,
        )
        return Suspend(waiting_for=waiting_for, next_step_id=step.next_step_id)

    if step.duration is not None:
        resume_at = ctx.now + step.duration.to_timedelta()
    else:
        raw = resolve_path(ctx.record, step.until_field)
        if raw is None or raw == "":
            raise StepExecutionError(
                f"Field {step.until_field} not found or empty"
            )
        resume_at = to_datetime(raw)

    ctx.history.append(step, "suspended", "waiting", wait="delay", resume_at=resume_at)
    return Suspend(waiting_for=DelayWait(resume_at=resume_at), next_step_id=step.next_step_id)


async def execute_end(step: EndStep, ctx: StepContext) -> StepResult:
    return Terminate(status=ExecutionStatus.COMPLETED)


Executor = Callable[[Any, StepContext], Awaitable[StepResult]]

EXECUTORS: Dict[str, Executor] = {
    "send_email": execute_send_email,
    "send_sms": execute_send_sms,
    "send_message": execute_send_message,
    "create_task": execute_create_task,
    "update_field": execute_update_field,
    "create_record": execute_create_record,
    "set_variable": execute_set_variable,
    "webhook": execute_webhook,
    "branch": execute_branch,
    "loop": execute_loop,
    "wait": execute_wait,
    "end": execute_end,
}

_missing = set(STEP_KINDS) - set(EXECUTORS)
if _missing:
    raise RuntimeError(f"No executor registered for step kinds: {sorted(_missing)}")


async def execute_step(step: Step, ctx: StepContext) -> StepResult:
    """Run ``step`` through the executor registered for its kind."""
    return await EXECUTORS[step.kind](step, ctx)
