"""Trigger matching, entry criteria, re-entry rules and field-wait resumption."""

import pytest

from practiceflow.contracts import (
    EventKind,
    ObjectType,
    ReentryMode,
    TriggerType,
    WorkflowDefinition,
)
from practiceflow.exceptions import WorkflowInactiveError, WorkflowNotFoundError
from practiceflow.persistence import ExecutionStatus
from practiceflow.transports import InMemoryTransport
from practiceflow.triggers import TriggerDispatcher

END_ONLY = [{"id": "end", "kind": "end"}]


def status_change_workflow(**kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        name="contacted follow-up",
        object_type=ObjectType.LEAD,
        trigger_type=TriggerType.FIELD_CHANGED,
        trigger_config={"field": "status", "from_value": "new", "to_value": "contacted"},
        steps=END_ONLY,
        **kwargs,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "old,new,fires",
    [
        ("new", "contacted", True),
        ("new", "lost", False),
        ("contacted", "contacted", False),
        ("open", "contacted", False),
    ],
)
async def test_field_change_trigger_matches_exact_transition(
    dispatcher, repository, old, new, fires
):
    await repository.save_definition(status_change_workflow())

    created = await dispatcher.on_domain_event(
        ObjectType.LEAD,
        EventKind.UPDATED,
        {"id": "lead-1", "status": new},
        {"id": "lead-1", "status": old},
    )

    assert bool(created) is fires


@pytest.mark.asyncio
async def test_created_event_matches_only_created_triggers(dispatcher, repository):
    on_create = WorkflowDefinition(
        name="welcome", object_type="lead", trigger_type="record_created", steps=END_ONLY
    )
    on_update = WorkflowDefinition(
        name="changed", object_type="lead", trigger_type="record_updated", steps=END_ONLY
    )
    other_type = WorkflowDefinition(
        name="invoice", object_type="invoice", trigger_type="record_created", steps=END_ONLY
    )
    inactive = WorkflowDefinition(
        name="off", object_type="lead", trigger_type="record_created", steps=END_ONLY,
        is_active=False,
    )
    for definition in (on_create, on_update, other_type, inactive):
        await repository.save_definition(definition)

    created = await dispatcher.on_domain_event("lead", "created", {"id": "lead-1"})

    assert len(created) == 1
    execution = await repository.get_execution(created[0])
    assert execution.workflow_id == on_create.id
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.trigger_type == "record_created"
    assert (await repository.get_definition(on_create.id)).execution_count == 1


@pytest.mark.asyncio
async def test_definitions_run_in_evaluation_order(dispatcher, repository):
    second = WorkflowDefinition(
        name="second", object_type="lead", trigger_type="record_created", steps=END_ONLY,
        evaluation_order=2,
    )
    first = WorkflowDefinition(
        name="first", object_type="lead", trigger_type="record_created", steps=END_ONLY,
        evaluation_order=1,
    )
    await repository.save_definition(second)
    await repository.save_definition(first)

    created = await dispatcher.on_domain_event("lead", "created", {"id": "lead-1"})

    workflows = [(await repository.get_execution(i)).workflow_id for i in created]
    assert workflows == [first.id, second.id]


@pytest.mark.asyncio
async def test_entry_criteria_filter_records(dispatcher, repository):
    definition = WorkflowDefinition(
        name="big deals", object_type="lead", trigger_type="record_created", steps=END_ONLY,
        entry_criteria={
            "match_type": "all",
            "conditions": [{"field": "value", "operator": "greater_than", "value": 1000}],
        },
    )
    await repository.save_definition(definition)

    assert await dispatcher.on_domain_event("lead", "created", {"id": "a", "value": 5000})
    assert not await dispatcher.on_domain_event("lead", "created", {"id": "b", "value": 10})
    # Uncoercible values keep the record out instead of raising.
    assert not await dispatcher.on_domain_event("lead", "created", {"id": "c", "value": "lots"})


@pytest.mark.asyncio
async def test_no_reentry_blocks_second_execution(dispatcher, repository):
    definition = WorkflowDefinition(
        name="once", object_type="lead", trigger_type="record_updated", steps=END_ONLY,
        reentry_mode=ReentryMode.NO_REENTRY,
    )
    await repository.save_definition(definition)

    assert await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})
    assert not await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})
    assert await dispatcher.on_domain_event("lead", "updated", {"id": "lead-2"})


@pytest.mark.asyncio
async def test_reentry_after_exit_requires_terminal_previous_run(dispatcher, repository):
    definition = WorkflowDefinition(
        name="nurture", object_type="lead", trigger_type="record_updated",
        steps=[
            {"id": "wait", "kind": "wait", "duration": {"days": 1}, "next_step_id": "end"},
            {"id": "end", "kind": "end"},
        ],
        reentry_mode=ReentryMode.REENTRY_AFTER_EXIT,
    )
    await repository.save_definition(definition)

    first = await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})
    assert (await repository.get_execution(first[0])).status == ExecutionStatus.WAITING
    assert not await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})


@pytest.mark.asyncio
async def test_reentry_after_days(dispatcher, repository, clock):
    definition = WorkflowDefinition(
        name="monthly", object_type="lead", trigger_type="record_updated", steps=END_ONLY,
        reentry_mode=ReentryMode.REENTRY_AFTER_DAYS, reentry_wait_days=30,
    )
    await repository.save_definition(definition)

    assert await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})
    clock.advance(days=10)
    assert not await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})
    clock.advance(days=20)
    assert await dispatcher.on_domain_event("lead", "updated", {"id": "lead-1"})


@pytest.mark.asyncio
async def test_invoke_manual(dispatcher, repository):
    definition = WorkflowDefinition(
        name="manual", object_type="lead", trigger_type="record_created", steps=END_ONLY
    )
    await repository.save_definition(definition)

    execution_id = await dispatcher.invoke_manual(definition.id, {"id": "lead-9"})

    execution = await repository.get_execution(execution_id)
    assert execution.trigger_type == "manual"
    assert execution.record_id == "lead-9"
    assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_invoke_manual_errors(dispatcher, repository):
    inactive = WorkflowDefinition(
        name="off", object_type="lead", trigger_type="manual", steps=END_ONLY, is_active=False
    )
    await repository.save_definition(inactive)

    with pytest.raises(WorkflowNotFoundError):
        await dispatcher.invoke_manual("nope", {})
    with pytest.raises(WorkflowInactiveError):
        await dispatcher.invoke_manual(inactive.id, {})


@pytest.mark.asyncio
async def test_unknown_event_kind_is_ignored(dispatcher):
    assert await dispatcher.on_domain_event("lead", "deleted", {"id": "x"}) == []
    assert await dispatcher.on_domain_event("spaceship", "created", {"id": "x"}) == []


@pytest.mark.asyncio
async def test_field_change_wait_resumes_on_matching_update(dispatcher, repository, capabilities):
    definition = WorkflowDefinition(
        name="await signature", object_type="contract", trigger_type="record_created",
        steps=[
            {"id": "wait", "kind": "wait", "field": "status", "expected_value": "signed", "next_step_id": "thanks"},
            {"id": "thanks", "kind": "send_email", "template_id": "thanks", "next_step_id": "end"},
            {"id": "end", "kind": "end"},
        ],
    )
    await repository.save_definition(definition)
    record = {"id": "c-1", "status": "sent", "email": "client@example.com"}

    [execution_id] = await dispatcher.on_domain_event("contract", "created", record)
    waiting = await repository.get_execution(execution_id)
    assert waiting.status == ExecutionStatus.WAITING
    assert waiting.next_run_at is None

    await dispatcher.on_domain_event("contract", "updated", dict(record, status="viewed"), record)
    assert (await repository.get_execution(execution_id)).status == ExecutionStatus.WAITING

    await dispatcher.on_domain_event(
        "contract", "updated", dict(record, status="signed"), dict(record, status="viewed")
    )
    done = await repository.get_execution(execution_id)
    assert done.status == ExecutionStatus.COMPLETED
    assert capabilities.notifier.emails[0]["to"] == "client@example.com"


@pytest.mark.asyncio
async def test_queue_mode_publishes_instead_of_running(engine, repository):
    transport = InMemoryTransport()
    dispatcher = TriggerDispatcher(engine, transport=transport, topic="jobs")
    definition = WorkflowDefinition(
        name="queued", object_type="lead", trigger_type="record_created", steps=END_ONLY
    )
    await repository.save_definition(definition)

    [execution_id] = await dispatcher.on_domain_event("lead", "created", {"id": "lead-1"})

    assert transport.pending("jobs") == 1
    assert (await repository.get_execution(execution_id)).status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_field_change_trigger_needs_previous_record(dispatcher, repository):
    await repository.save_definition(status_change_workflow())

    created = await dispatcher.on_domain_event(
        ObjectType.LEAD, EventKind.UPDATED, {"id": "lead-1", "status": "contacted"}
    )

    assert created == []


def any_change_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="await any status change", object_type="contract", trigger_type="record_created",
        steps=[
            {"id": "wait", "kind": "wait", "field": "status", "next_step_id": "end"},
            {"id": "end", "kind": "end"},
        ],
    )


@pytest.mark.asyncio
async def test_wait_without_expected_value_resumes_on_any_change(dispatcher, repository):
    await repository.save_definition(any_change_workflow())
    record = {"id": "c-1", "status": "sent"}
    [execution_id] = await dispatcher.on_domain_event("contract", "created", record)

    await dispatcher.on_domain_event("contract", "updated", dict(record), record)
    assert (await repository.get_execution(execution_id)).status == ExecutionStatus.WAITING

    await dispatcher.on_domain_event("contract", "updated", dict(record, status="viewed"), record)
    assert (await repository.get_execution(execution_id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_wait_without_expected_value_ignores_update_without_previous(
    dispatcher, repository
):
    await repository.save_definition(any_change_workflow())
    record = {"id": "c-1", "status": "sent"}
    [execution_id] = await dispatcher.on_domain_event("contract", "created", record)

    await dispatcher.on_domain_event("contract", "updated", dict(record, status="viewed"))

    assert (await repository.get_execution(execution_id)).status == ExecutionStatus.WAITING


@pytest.mark.asyncio
async def test_processing_wait_without_expected_value_keeps_it_waiting(
    dispatcher, repository, engine
):
    await repository.save_definition(any_change_workflow())
    [execution_id] = await dispatcher.on_domain_event(
        "contract", "created", {"id": "c-1", "status": "sent"}
    )

    execution = await engine.process_execution(execution_id)

    assert execution.status == ExecutionStatus.WAITING
    assert execution.current_step_id == "end"
    assert execution.waiting_for.field == "status"
    assert execution.waiting_for.expected_value is None
