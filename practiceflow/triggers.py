"""Matching domain events to workflow definitions."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from .constants import EXECUTION_TOPIC
from .contracts import (
    EventKind,
    ExecutionMessage,
    ObjectType,
    ReentryMode,
    TriggerType,
    WorkflowDefinition,
)
from .engine import WorkflowEngine, field_matches
from .exceptions import (
    EvaluationError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from .expressions import as_text, evaluate_boolean, resolve_path
from .persistence import (
    ExecutionStatus,
    FieldChangeWait,
    WorkflowExecution,
    WorkflowRepository,
)
from .transports import BaseTransport
from .utils.clock import ensure_utc

logger = logging.getLogger(__name__)

_EVENT_TRIGGERS = {
    EventKind.CREATED: {TriggerType.RECORD_CREATED},
    EventKind.UPDATED: {TriggerType.RECORD_UPDATED, TriggerType.FIELD_CHANGED},
}


def _record_id(record: Mapping[str, Any]) -> Optional[str]:
    value = record.get("id")
    return str(value) if value is not None else None


def field_transition_matches(
    definition: WorkflowDefinition,
    record: Mapping[str, Any],
    previous_record: Optional[Mapping[str, Any]],
) -> bool:
    """Whether the watched field changed and the transition passes the filters.

    Values are compared in their text form.
    """
    config = definition.trigger_config
    if not config.field or previous_record is None:
        return False
    old = as_text(resolve_path(previous_record, config.field))
    new = as_text(resolve_path(record, config.field))
    if old == new:
        return False
    if config.from_value is not None and old != as_text(config.from_value):
        return False
    if config.to_value is not None and new != as_text(config.to_value):
        return False
    return True


def passes_entry_criteria(
    definition: WorkflowDefinition, record: Mapping[str, Any]
) -> bool:
    criteria = definition.entry_criteria
    if not criteria or criteria.get("conditions") == []:
        return True
    try:
        return evaluate_boolean(criteria, record, {})
    except EvaluationError as exc:
        logger.warning(
            f"Entry criteria of workflow {definition.id} could not be evaluated: {exc}"
        )
        return False


class TriggerDispatcher:
    """Creates executions for domain events and manual invocations.

    New executions are processed inline by the engine, or published to
    ``transport`` for an :class:`~practiceflow.worker.ExecutionWorker` when
    one is given.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        repository: WorkflowRepository | None = None,
        transport: BaseTransport | None = None,
        topic: str = EXECUTION_TOPIC,
    ) -> None:
        self._engine = engine
        self._repository = repository or engine.repository
        self._transport = transport
        self._topic = topic

    async def on_domain_event(
        self,
        object_type: ObjectType | str,
        event_kind: EventKind | str,
        record: Mapping[str, Any],
        previous_record: Optional[Mapping[str, Any]] = None,
    ) -> list[str]:
        """Start every matching workflow; returns the new execution ids.

        Never raises: failures are logged so the caller's mutation path is
        unaffected.
        """
        created: list[str] = []
        try:
            object_type = ObjectType(getattr(object_type, "value", object_type))
            kind = EventKind(getattr(event_kind, "value", event_kind))
        except ValueError as exc:
            logger.warning(f"Ignoring domain event: {exc}")
            return created

        record_id = _record_id(record)
        if kind == EventKind.UPDATED and record_id is not None:
            await self._resume_field_waits(object_type, record_id, record, previous_record)

        try:
            definitions = await self._repository.list_definitions(
                object_type.value, active_only=True
            )
        except Exception:
            logger.exception(f"Could not load workflows for {object_type.value}")
            return created

        for definition in definitions:
            if definition.trigger_type not in _EVENT_TRIGGERS[kind]:
                continue
            if definition.trigger_type == TriggerType.FIELD_CHANGED and not (
                field_transition_matches(definition, record, previous_record)
            ):
                continue
            try:
                if not passes_entry_criteria(definition, record):
                    continue
                if not await self._reentry_allowed(definition, record_id):
                    logger.info(
                        f"Record {record_id} may not re-enter workflow {definition.id}"
                    )
                    continue
                created.append(
                    await self._start(definition, record, definition.trigger_type)
                )
            except Exception:
                logger.exception(
                    f"Failed to start workflow {definition.id} for {object_type.value} {record_id}"
                )
        return created

    async def invoke_manual(
        self, workflow_id: str, record: Optional[Mapping[str, Any]] = None
    ) -> str:
        """Start ``workflow_id`` for ``record`` regardless of trigger rules."""
        definition = await self._repository.get_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        if not definition.is_active:
            raise WorkflowInactiveError(f"Workflow {workflow_id} is not active")
        return await self._start(definition, record or {}, TriggerType.MANUAL)

    # ------------------------------------------------------------------
    async def _reentry_allowed(
        self, definition: WorkflowDefinition, record_id: Optional[str]
    ) -> bool:
        mode = definition.reentry_mode
        if mode == ReentryMode.ALLOW_ALL or record_id is None:
            return True
        latest = await self._repository.latest_execution_for_record(
            definition.id, record_id
        )
        if latest is None:
            return True
        if mode == ReentryMode.NO_REENTRY:
            return False
        if mode == ReentryMode.REENTRY_AFTER_EXIT:
            return latest.is_terminal
        wait = timedelta(days=definition.reentry_wait_days or 0)
        return ensure_utc(latest.started_at) + wait <= self._engine.now()

    async def _start(
        self,
        definition: WorkflowDefinition,
        record: Mapping[str, Any],
        trigger_type: TriggerType,
    ) -> str:
        now = self._engine.now()
        execution = WorkflowExecution(
            workflow_id=definition.id,
            object_type=definition.object_type.value,
            record_id=_record_id(record),
            tenant_id=definition.tenant_id,
            trigger_type=trigger_type.value,
            current_step_id=definition.start_step_id,
            record=dict(record),
            triggered_at=now,
            started_at=now,
            updated_at=now,
        )
        await self._repository.create_execution(execution)
        await self._repository.record_trigger(definition.id, now)
        logger.info(
            f"Started execution {execution.id} of workflow {definition.id} for record {execution.record_id}"
        )
        await self._hand_off(execution)
        return execution.id

    async def _hand_off(self, execution: WorkflowExecution) -> None:
        if self._transport is not None:
            await self._transport.publish(
                self._topic,
                ExecutionMessage(
                    execution_id=execution.id, workflow_id=execution.workflow_id
                ),
            )
        else:
            await self._engine.process_execution(execution.id)

    async def _resume_field_waits(
        self,
        object_type: ObjectType,
        record_id: str,
        record: Mapping[str, Any],
        previous_record: Optional[Mapping[str, Any]],
    ) -> None:
        try:
            waiting = await self._repository.list_field_waits(object_type.value, record_id)
        except Exception:
            logger.exception(f"Could not load field waits for {object_type.value} {record_id}")
            return

        for execution in waiting:
            wait = execution.waiting_for
            if not isinstance(wait, FieldChangeWait):
                continue
            new = resolve_path(record, wait.field)
            if wait.expected_value is None:
                if previous_record is None:
                    continue
                satisfied = as_text(new) != as_text(resolve_path(previous_record, wait.field))
            else:
                satisfied = field_matches(new, wait.expected_value)
            if not satisfied:
                continue
            try:
                await self._resume(execution.id, record)
            except Exception:
                logger.exception(f"Failed to resume execution {execution.id}")

    async def _resume(self, execution_id: str, record: Mapping[str, Any]) -> None:
        claimed = await self._repository.transition_status(
            execution_id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING
        )
        if not claimed:
            logger.info(f"Execution {execution_id} was already resumed")
            return
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            return
        execution.record = dict(record)
        await self._repository.save_execution(execution)
        logger.info(f"Resuming execution {execution_id} after field change")
        await self._hand_off(execution)
