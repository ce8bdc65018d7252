"""End-to-end: new lead -> email -> wait two days -> mark contacted."""

import pytest

from practiceflow.contracts import WorkflowDefinition
from practiceflow.engine import WorkflowEngine
from practiceflow.persistence import ExecutionStatus, SQLiteWorkflowRepository
from practiceflow.scheduler import ResumeScheduler
from practiceflow.triggers import TriggerDispatcher

LEAD_FOLLOW_UP = {
    "name": "New lead follow-up",
    "object_type": "lead",
    "trigger_type": "record_created",
    "steps": [
        {"id": "welcome", "kind": "send_email", "template_id": "lead-welcome", "next_step_id": "pause"},
        {"id": "pause", "kind": "wait", "duration": {"days": 2}, "next_step_id": "mark"},
        {"id": "mark", "kind": "update_field", "field": "status", "value": "contacted", "next_step_id": "done"},
        {"id": "done", "kind": "end"},
    ],
}


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["memory", "sqlite"])
async def test_lead_follow_up_scenario(backend, tmp_path, repository, capabilities, clock):
    if backend == "sqlite":
        repository = SQLiteWorkflowRepository(tmp_path / "flows.db")
    engine = WorkflowEngine(repository, capabilities, clock=clock)
    dispatcher = TriggerDispatcher(engine)
    scheduler = ResumeScheduler(engine)
    definition = WorkflowDefinition.model_validate(LEAD_FOLLOW_UP)
    await repository.save_definition(definition)

    lead = capabilities.records.add(
        "lead", {"id": "lead-42", "email": "ada@example.com", "status": "new"}
    )
    [execution_id] = await dispatcher.on_domain_event("lead", "created", lead)

    execution = await repository.get_execution(execution_id)
    assert execution.status == ExecutionStatus.WAITING
    assert execution.next_run_at == clock.now + definition.get_step("pause").duration.to_timedelta()
    assert capabilities.notifier.emails[0]["to"] == "ada@example.com"

    clock.advance(days=2)
    result = await scheduler.sweep(10)
    assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)

    execution = await repository.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert (await capabilities.records.get_record("lead", "lead-42"))["status"] == "contacted"
    assert [(h.step_id, h.event) for h in execution.history] == [
        ("welcome", "step_completed"),
        ("pause", "suspended"),
        ("mark", "step_completed"),
        (None, "completed"),
    ]
