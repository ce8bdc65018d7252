from datetime import datetime, timedelta, timezone

import pytest

from practiceflow.contracts import WorkflowDefinition
from practiceflow.persistence import (
    DelayWait,
    ExecutionStatus,
    FieldChangeWait,
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    WorkflowExecution,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return InMemoryWorkflowRepository()


def definition(**kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=kwargs.pop("name", "wf"),
        object_type=kwargs.pop("object_type", "lead"),
        trigger_type="record_created",
        steps=[{"id": "end", "kind": "end"}],
        **kwargs,
    )


def waiting(workflow_id, record_id, wait, **kwargs) -> WorkflowExecution:
    execution = WorkflowExecution(
        workflow_id=workflow_id, object_type="lead", record_id=record_id, **kwargs
    )
    execution.suspend(wait, "end")
    return execution


@pytest.mark.asyncio
async def test_definition_crud_and_ordering(repo):
    late = definition(name="late", evaluation_order=5)
    early = definition(name="early", evaluation_order=1)
    off = definition(name="off", is_active=False)
    other = definition(name="invoice", object_type="invoice")
    for d in (late, early, off, other):
        await repo.save_definition(d)

    names = [d.name for d in await repo.list_definitions("lead", active_only=True)]
    assert names == ["early", "late"]
    assert len(await repo.list_definitions()) == 4

    await repo.record_trigger(early.id, NOW)
    stored = await repo.get_definition(early.id)
    assert stored.execution_count == 1
    assert stored.last_executed_at == NOW
    assert await repo.get_definition("missing") is None


@pytest.mark.asyncio
async def test_execution_roundtrip_keeps_wait_and_history(repo):
    execution = waiting("wf-1", "lead-1", DelayWait(resume_at=NOW))
    execution.variables = {"n": 1, "nested": {"ok": True}}
    await repo.create_execution(execution)

    loaded = await repo.get_execution(execution.id)
    assert loaded.status == ExecutionStatus.WAITING
    assert loaded.waiting_for == DelayWait(resume_at=NOW)
    assert loaded.next_run_at == NOW
    assert loaded.variables == {"n": 1, "nested": {"ok": True}}

    loaded.variables["n"] = 2
    assert (await repo.get_execution(execution.id)).variables["n"] == 1
    await repo.save_execution(loaded)
    assert (await repo.get_execution(execution.id)).variables["n"] == 2


@pytest.mark.asyncio
async def test_transition_status_is_compare_and_swap(repo):
    execution = waiting("wf-1", "lead-1", DelayWait(resume_at=NOW))
    await repo.create_execution(execution)

    assert await repo.transition_status(
        execution.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING
    )
    assert not await repo.transition_status(
        execution.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING
    )
    assert not await repo.transition_status(
        "missing", ExecutionStatus.WAITING, ExecutionStatus.RUNNING
    )

    claimed = await repo.get_execution(execution.id)
    assert claimed.status == ExecutionStatus.RUNNING
    assert claimed.waiting_for is None
    assert claimed.next_run_at is None
    assert await repo.list_due_executions(NOW + timedelta(days=1), 10) == []


@pytest.mark.asyncio
async def test_due_and_field_wait_queries(repo):
    due = waiting("wf", "a", DelayWait(resume_at=NOW - timedelta(minutes=1)))
    later = waiting("wf", "b", DelayWait(resume_at=NOW + timedelta(hours=1)))
    field = waiting("wf", "a", FieldChangeWait(field="status", expected_value="won"))
    for execution in (due, later, field):
        await repo.create_execution(execution)

    assert [e.id for e in await repo.list_due_executions(NOW, 10)] == [due.id]
    assert await repo.list_due_executions(NOW, 0) == []
    assert [e.id for e in await repo.list_field_waits("lead", "a")] == [field.id]
    assert await repo.list_field_waits("lead", "b") == []


@pytest.mark.asyncio
async def test_list_and_latest_executions(repo):
    older = WorkflowExecution(
        workflow_id="wf", object_type="lead", record_id="r", started_at=NOW - timedelta(days=1)
    )
    newer = WorkflowExecution(
        workflow_id="wf", object_type="lead", record_id="r", started_at=NOW,
        status=ExecutionStatus.COMPLETED,
    )
    unrelated = WorkflowExecution(workflow_id="other", object_type="lead", record_id="r")
    for execution in (older, newer, unrelated):
        await repo.create_execution(execution)

    listed = await repo.list_executions(workflow_id="wf")
    assert [e.id for e in listed] == [newer.id, older.id]
    completed = await repo.list_executions(status=ExecutionStatus.COMPLETED)
    assert [e.id for e in completed] == [newer.id]
    assert len(await repo.list_executions(limit=1)) == 1
    assert (await repo.latest_execution_for_record("wf", "r")).id == newer.id
    assert await repo.latest_execution_for_record("wf", "nobody") is None
