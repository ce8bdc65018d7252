"""Static checks on workflow definitions before they are activated."""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, Field

from .contracts import (
    BranchStep,
    CreateRecordStep,
    LoopStep,
    ReentryMode,
    SendEmailStep,
    SendMessageStep,
    SendSmsStep,
    SetVariableStep,
    TriggerType,
    UpdateFieldStep,
    WaitStep,
    WebhookStep,
    WorkflowDefinition,
)
from .expressions import validate_expression


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


def _expressions(step: Any) -> List[tuple[str, Any]]:
    """Expression-bearing attributes of ``step`` keyed by a display path."""
    prefix = f"step {step.id!r}"
    if isinstance(step, BranchStep):
        return [(f"{prefix}.condition", step.condition)]
    if isinstance(step, LoopStep) and step.while_condition is not None:
        return [(f"{prefix}.while_condition", step.while_condition)]
    if isinstance(step, (UpdateFieldStep, SetVariableStep)):
        return [(f"{prefix}.value", step.value)]
    if isinstance(step, CreateRecordStep):
        return [(f"{prefix}.data", step.data)]
    if isinstance(step, WebhookStep):
        return [(f"{prefix}.url", step.url), (f"{prefix}.payload", step.payload)]
    if isinstance(step, (SendEmailStep, SendSmsStep, SendMessageStep)):
        return [(f"{prefix}.body", step.body)]
    if isinstance(step, WaitStep) and step.field is not None:
        return [(f"{prefix}.expected_value", step.expected_value)]
    return []


def validate_workflow(definition: WorkflowDefinition) -> ValidationResult:
    """Report errors that make a definition unrunnable and softer warnings."""
    errors: List[str] = []
    warnings: List[str] = []
    steps = definition.step_map()

    if not steps:
        errors.append("Workflow must have at least one step")
    elif definition.start_step_id not in steps:
        errors.append(f"Start step {definition.start_step_id!r} does not exist")

    if definition.trigger_type == TriggerType.FIELD_CHANGED and not definition.trigger_config.field:
        errors.append("Field change trigger needs a field to watch")
    if (
        definition.reentry_mode == ReentryMode.REENTRY_AFTER_DAYS
        and not definition.reentry_wait_days
    ):
        errors.append("Re-entry after days needs reentry_wait_days")
    if definition.entry_criteria:
        errors.extend(validate_expression(definition.entry_criteria, "entry_criteria"))

    for step in steps.values():
        for target in step.successors():
            if target not in steps:
                errors.append(f"Step {step.id!r} points to missing step {target!r}")

        if isinstance(step, BranchStep):
            if not step.true_next_step_id and not step.false_next_step_id:
                errors.append(f"Branch step {step.id!r} has no branches defined")
            elif not step.true_next_step_id or not step.false_next_step_id:
                warnings.append(f"Branch step {step.id!r} is missing its true or false branch")
        if isinstance(step, (SendEmailStep, SendSmsStep)):
            if not step.template_id and not step.body:
                warnings.append(f"Step {step.id!r} has no template or body configured")
            if step.to_type == "custom" and not step.to_address:
                errors.append(f"Step {step.id!r} sends to a custom address but none is set")

        for path, expression in _expressions(step):
            errors.extend(validate_expression(expression, path))

    if definition.start_step_id in steps:
        reachable = _reachable(definition)
        orphaned = [step_id for step_id in steps if step_id not in reachable]
        if orphaned:
            warnings.append(
                f"{len(orphaned)} step(s) are not connected and will not be executed: "
                + ", ".join(orphaned)
            )
        if not any(_can_finish(steps[step_id]) for step_id in reachable if step_id in steps):
            warnings.append("No reachable step ends the workflow")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _reachable(definition: WorkflowDefinition) -> set[str]:
    steps = definition.step_map()
    seen: set[str] = set()
    pending = [definition.start_step_id]
    while pending:
        step_id = pending.pop()
        if step_id in seen or step_id not in steps:
            continue
        seen.add(step_id)
        pending.extend(steps[step_id].successors())
    return seen


def _can_finish(step: Any) -> bool:
    """An end step, or a step that may advance to nothing."""
    if step.kind == "end":
        return True
    if isinstance(step, BranchStep):
        return not step.true_next_step_id or not step.false_next_step_id
    if isinstance(step, LoopStep):
        return step.next_step_id is None
    return getattr(step, "next_step_id", None) is None
