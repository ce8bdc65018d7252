"""Workflow engine: walks an execution's step graph."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .capabilities import Capabilities, in_memory_capabilities
from .constants import DEFAULT_MAX_STEPS_PER_RUN
from .contracts import SIDE_EFFECT_KINDS, WorkflowDefinition
from .exceptions import EvaluationError, ExecutionNotFoundError
from .expressions import as_text, resolve_path
from .persistence import (
    DelayWait,
    ExecutionStatus,
    FailureCode,
    FieldChangeWait,
    WorkflowExecution,
    WorkflowRepository,
    get_repository,
)
from .steps import (
    Advance,
    HistoryLog,
    StepContext,
    Suspend,
    Terminate,
    execute_step,
)
from .utils.clock import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


def field_matches(value: object, expected: object) -> bool:
    """Whether a field value satisfies a field-change wait's expectation."""
    return as_text(value) == as_text(expected)


class WorkflowEngine:
    """Runs executions until they complete, fail or suspend.

    Each call to :meth:`process_execution` advances at most ``max_steps``
    steps. State is persisted after every advance so a crash leaves a
    resumable ``current_step_id``.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        capabilities: Capabilities | None = None,
        max_steps: int = DEFAULT_MAX_STEPS_PER_RUN,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository or get_repository()
        self.capabilities = capabilities or in_memory_capabilities()
        self.max_steps = max_steps
        self._clock = clock

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # ------------------------------------------------------------------
    async def process_execution(self, execution_id: str) -> WorkflowExecution:
        """Advance ``execution_id`` as far as it can go right now.

        Terminal executions and waits whose condition is unmet are left
        untouched. Raises :class:`ExecutionNotFoundError` for unknown ids;
        every other outcome is reported through the execution's state.
        """
        execution = await self._load(execution_id)

        if execution.is_terminal:
            logger.debug(f"Execution {execution_id} is {execution.status.value}; nothing to do")
            return execution

        if execution.status == ExecutionStatus.WAITING:
            if not await self._wait_satisfied(execution):
                return execution
            claimed = await self._repository.transition_status(
                execution_id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING
            )
            if not claimed:
                logger.info(f"Execution {execution_id} was claimed by another worker")
                return await self._load(execution_id)
            execution = await self._load(execution_id)

        return await self._run(execution)

    async def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        """Mark a non-terminal execution as cancelled."""
        execution = await self._load(execution_id)
        if execution.is_terminal:
            return execution
        if not await self._repository.transition_status(
            execution_id, execution.status, ExecutionStatus.CANCELLED
        ):
            return await self._load(execution_id)

        execution = await self._load(execution_id)
        now = self.now()
        HistoryLog(execution.history, now).marker(
            "cancelled", "cancelled", step_id=execution.current_step_id
        )
        execution.current_step_id = None
        execution.in_flight_step_id = None
        execution.completed_at = now
        await self._repository.save_execution(execution)
        logger.info(f"Execution {execution_id} cancelled")
        return execution

    async def retry_execution(self, execution_id: str) -> WorkflowExecution:
        """Re-run a failed execution from the step it failed on."""
        execution = await self._load(execution_id)
        if execution.status != ExecutionStatus.FAILED:
            logger.info(
                f"Execution {execution_id} is {execution.status.value}; only failed executions are retried"
            )
            return execution
        if not await self._repository.transition_status(
            execution_id, ExecutionStatus.FAILED, ExecutionStatus.RUNNING
        ):
            return await self._load(execution_id)

        execution = await self._load(execution_id)
        step_id = self._failed_step_id(execution)
        execution.current_step_id = step_id
        execution.retry_count += 1
        execution.error = None
        execution.failure_code = None
        execution.completed_at = None
        HistoryLog(execution.history, self.now()).marker(
            "retried", "running", step_id=step_id, retry_count=execution.retry_count
        )
        await self._repository.save_execution(execution)
        logger.info(f"Execution {execution_id} retrying from step {step_id}")
        return await self._run(execution)

    # ------------------------------------------------------------------
    async def _load(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution

    @staticmethod
    def _failed_step_id(execution: WorkflowExecution) -> Optional[str]:
        for entry in reversed(execution.history):
            if entry.event == "failed":
                return entry.step_id
        return None

    async def _wait_satisfied(self, execution: WorkflowExecution) -> bool:
        waiting_for = execution.waiting_for
        if isinstance(waiting_for, DelayWait):
            return ensure_utc(waiting_for.resume_at) <= self.now()
        if isinstance(waiting_for, FieldChangeWait):
            # Without an expected value only an observed change can resume it.
            if waiting_for.expected_value is None or execution.record_id is None:
                return False
            record = await self.capabilities.records.get_record(
                execution.object_type, execution.record_id
            )
            if record is None:
                return False
            return field_matches(
                resolve_path(record, waiting_for.field), waiting_for.expected_value
            )
        return True

    async def _refresh_record(self, execution: WorkflowExecution) -> None:
        if execution.record_id is None:
            return
        record = await self.capabilities.records.get_record(
            execution.object_type, execution.record_id
        )
        if record is not None:
            execution.record = record

    async def _run(self, execution: WorkflowExecution) -> WorkflowExecution:
        definition = await self._repository.get_definition(execution.workflow_id)
        if definition is None:
            return await self._fail(
                execution,
                FailureCode.MISSING_WORKFLOW,
                f"Workflow {execution.workflow_id} not found",
            )
        await self._refresh_record(execution)
        return await self._walk(execution, definition)

    async def _walk(
        self, execution: WorkflowExecution, definition: WorkflowDefinition
    ) -> WorkflowExecution:
        now = self.now()
        history = HistoryLog(execution.history, now)
        ctx = StepContext(
            execution_id=execution.id,
            object_type=execution.object_type,
            record_id=execution.record_id,
            record=execution.record,
            variables=execution.variables,
            history=history,
            capabilities=self.capabilities,
            now=now,
        )
        steps = definition.step_map()
        advances = 0

        while execution.status == ExecutionStatus.RUNNING:
            step_id = execution.current_step_id
            if step_id is None:
                return await self._complete(execution)
            if advances >= self.max_steps:
                return await self._fail(
                    execution,
                    FailureCode.STEP_LIMIT_EXCEEDED,
                    f"Step limit exceeded ({self.max_steps} steps in one run)",
                )
            step = steps.get(step_id)
            if step is None:
                return await self._fail(
                    execution,
                    FailureCode.MISSING_STEP,
                    f"Step {step_id} not found in workflow {definition.id}",
                )

            if execution.in_flight_step_id == step.id:
                logger.warning(
                    f"Execution {execution.id}: step {step.id} was interrupted; not repeating its side effect"
                )
                history.append(
                    step, "recovered", "warning",
                    reason="interrupted before completion; side effect not repeated",
                )
                execution.in_flight_step_id = None
                execution.current_step_id = getattr(step, "next_step_id", None)
                advances += 1
                await self._repository.save_execution(execution)
                continue

            if step.kind in SIDE_EFFECT_KINDS:
                execution.in_flight_step_id = step.id
                await self._repository.save_execution(execution)

            try:
                result = await execute_step(step, ctx)
            except EvaluationError as exc:
                logger.warning(f"Execution {execution.id}: step {step.id} failed: {exc}")
                history.append(step, "step_failed", "failed", **exc.to_detail())
                return await self._fail(execution, FailureCode.EVALUATION_ERROR, str(exc))
            except Exception as exc:
                logger.exception(f"Execution {execution.id}: step {step.id} raised")
                history.append(step, "step_failed", "failed", error=str(exc))
                return await self._fail(execution, FailureCode.EXECUTOR_ERROR, str(exc))

            execution.in_flight_step_id = None
            advances += 1

            if isinstance(result, Advance):
                execution.current_step_id = result.next_step_id
                await self._repository.save_execution(execution)
            elif isinstance(result, Suspend):
                execution.suspend(result.waiting_for, result.next_step_id)
                await self._repository.save_execution(execution)
                logger.info(
                    f"Execution {execution.id} waiting on {result.waiting_for.type} at step {step.id}"
                )
                return execution
            elif isinstance(result, Terminate):
                if result.status == ExecutionStatus.COMPLETED:
                    execution.current_step_id = None
                    return await self._complete(execution)
                return await self._fail(
                    execution,
                    FailureCode.EXECUTOR_ERROR,
                    result.reason or f"Step {step.id} terminated the execution",
                )

        return execution

    async def _complete(self, execution: WorkflowExecution) -> WorkflowExecution:
        now = self.now()
        execution.status = ExecutionStatus.COMPLETED
        execution.current_step_id = None
        execution.in_flight_step_id = None
        execution.completed_at = now
        HistoryLog(execution.history, now).marker("completed", "completed")
        await self._repository.save_execution(execution)
        logger.info(f"Execution {execution.id} of workflow {execution.workflow_id} completed")
        return execution

    async def _fail(
        self, execution: WorkflowExecution, code: FailureCode, reason: str
    ) -> WorkflowExecution:
        now = self.now()
        HistoryLog(execution.history, now).marker(
            "failed",
            "failed",
            step_id=execution.current_step_id,
            failure_code=code.value,
            error=reason,
        )
        execution.status = ExecutionStatus.FAILED
        execution.failure_code = code
        execution.error = reason
        execution.current_step_id = None
        execution.in_flight_step_id = None
        execution.completed_at = now
        await self._repository.save_execution(execution)
        logger.error(
            f"Execution {execution.id} of workflow {execution.workflow_id} failed ({code.value}): {reason}"
        )
        return execution
