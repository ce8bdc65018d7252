"""Polling sweep that resumes delayed executions."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel

from .constants import DEFAULT_SWEEP_BATCH_SIZE, DEFAULT_SWEEP_INTERVAL_SECONDS
from .engine import WorkflowEngine
from .persistence import ExecutionStatus, WorkflowRepository
from .utils.clock import ensure_utc

logger = logging.getLogger(__name__)


class SweepResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class ResumeScheduler:
    """Finds due waits, claims them and hands them to the engine.

    Only delay waits are swept; field-change waits are resumed by the
    trigger dispatcher when it observes the change.
    """

    def __init__(
        self, engine: WorkflowEngine, repository: WorkflowRepository | None = None
    ) -> None:
        self._engine = engine
        self._repository = repository or engine.repository

    async def sweep(self, batch_size: int = DEFAULT_SWEEP_BATCH_SIZE) -> SweepResult:
        result = SweepResult()
        now = self._engine.now()
        due = await self._repository.list_due_executions(now, batch_size)

        for execution in due:
            claimed = await self._repository.transition_status(
                execution.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING
            )
            if not claimed:
                logger.debug(f"Execution {execution.id} already claimed; skipping")
                result.skipped += 1
                continue

            result.processed += 1
            try:
                processed = await self._engine.process_execution(execution.id)
            except Exception:
                logger.exception(f"Sweep failed to process execution {execution.id}")
                result.failed += 1
                continue
            if processed.status == ExecutionStatus.FAILED:
                result.failed += 1
            else:
                result.succeeded += 1

        if due:
            logger.info(
                f"Sweep processed {result.processed} executions "
                f"({result.succeeded} succeeded, {result.failed} failed, {result.skipped} skipped)"
            )
        return result

    async def recover_running(
        self,
        batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        stale_after: Optional[timedelta] = None,
    ) -> SweepResult:
        """Re-invoke the engine for executions left in ``running``.

        Meant for process start-up. With ``stale_after`` only executions not
        updated for that long are picked up.
        """
        result = SweepResult()
        running = await self._repository.list_executions(
            status=ExecutionStatus.RUNNING, limit=batch_size
        )
        cutoff = self._engine.now() - stale_after if stale_after is not None else None

        for execution in running:
            if cutoff is not None and ensure_utc(execution.updated_at) > cutoff:
                result.skipped += 1
                continue
            result.processed += 1
            try:
                processed = await self._engine.process_execution(execution.id)
            except Exception:
                logger.exception(f"Recovery failed for execution {execution.id}")
                result.failed += 1
                continue
            if processed.status == ExecutionStatus.FAILED:
                result.failed += 1
            else:
                result.succeeded += 1
        if running:
            logger.info(f"Recovered {result.processed} running executions")
        return result

    async def run_forever(
        self,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        iterations: Optional[int] = None,
    ) -> None:
        """Sweep every ``interval`` seconds; ``iterations`` bounds the loop."""
        count = 0
        while iterations is None or count < iterations:
            try:
                await self.sweep(batch_size)
            except Exception:
                logger.exception("Sweep failed")
            count += 1
            if iterations is None or count < iterations:
                await asyncio.sleep(interval)
