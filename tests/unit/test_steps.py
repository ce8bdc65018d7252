"""Tests for individual step executors."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from practiceflow.capabilities import HttpxWebhookClient
from practiceflow.contracts import (
    BranchStep,
    CreateRecordStep,
    CreateTaskStep,
    LoopStep,
    SendEmailStep,
    SendSmsStep,
    SetVariableStep,
    UpdateFieldStep,
    WaitStep,
    WebhookStep,
)
from practiceflow.exceptions import StepExecutionError
from practiceflow.persistence import DelayWait, FieldChangeWait
from practiceflow.steps import (
    EXECUTORS,
    Advance,
    HistoryLog,
    StepContext,
    Suspend,
    execute_step,
)

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_context(capabilities, record=None, variables=None, record_id="lead-1"):
    history = []
    ctx = StepContext(
        execution_id="exec-1",
        object_type="lead",
        record_id=record_id,
        record=record if record is not None else {"id": "lead-1", "email": "ada@example.com"},
        variables=variables if variables is not None else {},
        history=HistoryLog(history, NOW),
        capabilities=capabilities,
        now=NOW,
    )
    return ctx, history


def test_every_step_kind_has_an_executor():
    assert set(EXECUTORS) == {
        "send_email", "send_sms", "send_message", "create_task", "update_field",
        "create_record", "set_variable", "webhook", "branch", "loop", "wait", "end",
    }


@pytest.mark.asyncio
async def test_send_email_renders_body_and_records_completion(capabilities):
    ctx, history = make_context(capabilities, record={"id": "lead-1", "email": "ada@example.com", "first_name": "Ada"})
    step = SendEmailStep(
        id="welcome", template_id="tpl-welcome", body="Hello {{ record.first_name }}",
        next_step_id="next",
    )

    result = await execute_step(step, ctx)

    assert result == Advance(next_step_id="next")
    sent = capabilities.notifier.emails[0]
    assert sent["to"] == "ada@example.com"
    assert sent["template_id"] == "tpl-welcome"
    assert sent["context"]["body"] == "Hello Ada"
    assert [(h.event, h.status) for h in history] == [("step_completed", "completed")]


@pytest.mark.asyncio
async def test_notification_failure_is_a_warning_and_still_advances(capabilities):
    capabilities.notifier.fail_with = RuntimeError("provider down")
    ctx, history = make_context(capabilities, record={"id": "lead-1", "phone": "+15550100"})
    step = SendSmsStep(id="sms", template_id="tpl", next_step_id="after")

    result = await execute_step(step, ctx)

    assert result.next_step_id == "after"
    assert history[0].status == "warning"
    assert history[0].detail["error"] == "provider down"


@pytest.mark.asyncio
async def test_missing_recipient_is_a_warning(capabilities):
    ctx, history = make_context(capabilities, record={"id": "lead-1"})
    result = await execute_step(SendEmailStep(id="mail", template_id="t", next_step_id="n"), ctx)
    assert result.next_step_id == "n"
    assert history[0].status == "warning"
    assert capabilities.notifier.emails == []


@pytest.mark.asyncio
async def test_custom_recipient_is_rendered(capabilities):
    ctx, _ = make_context(capabilities, variables={"manager": "boss@example.com"})
    step = SendEmailStep(
        id="mail", template_id="t", to_type="custom", to_address="{{ vars.manager }}"
    )
    await execute_step(step, ctx)
    assert capabilities.notifier.emails[0]["to"] == "boss@example.com"


@pytest.mark.asyncio
async def test_create_task_sets_due_date(capabilities):
    ctx, history = make_context(capabilities)
    step = CreateTaskStep(id="task", title="Call {{ record.email }}", due_days=3, priority=2)
    await execute_step(step, ctx)
    task = capabilities.tasks.tasks[0]
    assert task["title"] == "Call ada@example.com"
    assert task["due_date"] == "2024-03-04"
    assert task["record_id"] == "lead-1"
    assert history[0].detail["task_id"] == task["id"]


@pytest.mark.asyncio
async def test_update_field_writes_through_record_store(capabilities):
    capabilities.records.add("lead", {"id": "lead-1", "status": "new"})
    ctx, history = make_context(capabilities, record={"id": "lead-1", "status": "new"})
    step = UpdateFieldStep(id="upd", field="status", value="contacted", next_step_id=None)

    result = await execute_step(step, ctx)

    assert result == Advance(next_step_id=None)
    stored = await capabilities.records.get_record("lead", "lead-1")
    assert stored["status"] == "contacted"
    assert ctx.record["status"] == "contacted"
    assert history[0].detail == {"field": "status", "value": "contacted"}


@pytest.mark.asyncio
async def test_update_field_without_record_raises(capabilities):
    ctx, _ = make_context(capabilities, record={}, record_id=None)
    with pytest.raises(StepExecutionError):
        await execute_step(UpdateFieldStep(id="upd", field="status", value="x"), ctx)


@pytest.mark.asyncio
async def test_create_record_and_set_variable(capabilities):
    ctx, _ = make_context(capabilities)
    await execute_step(
        CreateRecordStep(
            id="mk", record_type="meeting", data={"lead_id": {"field": "id"}},
            result_variable="meeting_id",
        ),
        ctx,
    )
    meeting = await capabilities.records.get_record("meeting", ctx.variables["meeting_id"])
    assert meeting["lead_id"] == "lead-1"

    await execute_step(SetVariableStep(id="sv", variable="greeting", value="hi {{ record.id }}"), ctx)
    assert ctx.variables["greeting"] == "hi lead-1"


@pytest.mark.asyncio
async def test_branch_records_outcome(capabilities):
    ctx, history = make_context(capabilities, record={"id": "lead-1", "status": "x"})
    step = BranchStep(
        id="b",
        condition={"field": "status", "operator": "equals", "value": "x"},
        true_next_step_id="yes",
        false_next_step_id="no",
        result_variable="is_x",
    )
    assert (await execute_step(step, ctx)).next_step_id == "yes"
    assert ctx.variables["is_x"] is True
    assert history[0].detail["outcome"] is True


@pytest.mark.asyncio
async def test_loop_counts_iterations_and_clears_counter_on_exit(capabilities):
    ctx, _ = make_context(capabilities)
    step = LoopStep(
        id="loop", counter_variable="i", max_iterations=2, body_step_id="body",
        next_step_id="done",
    )
    assert (await execute_step(step, ctx)).next_step_id == "body"
    assert (await execute_step(step, ctx)).next_step_id == "body"
    assert ctx.variables["i"] == 2
    assert (await execute_step(step, ctx)).next_step_id == "done"
    assert "i" not in ctx.variables


@pytest.mark.asyncio
async def test_loop_while_condition_stops_early(capabilities):
    ctx, _ = make_context(capabilities, variables={"remaining": 0})
    step = LoopStep(
        id="loop", counter_variable="i", max_iterations=5, body_step_id="body",
        while_condition={"var": "remaining", "operator": "greater_than", "value": 0},
        next_step_id="done",
    )
    assert (await execute_step(step, ctx)).next_step_id == "done"


@pytest.mark.asyncio
async def test_wait_duration_suspends_with_resume_time(capabilities):
    ctx, history = make_context(capabilities)
    step = WaitStep(id="w", duration={"days": 2}, next_step_id="after")

    result = await execute_step(step, ctx)

    assert isinstance(result, Suspend)
    assert result.waiting_for == DelayWait(resume_at=datetime(2024, 3, 3, 9, 0, tzinfo=timezone.utc))
    assert result.next_step_id == "after"
    assert history[0].event == "suspended"


@pytest.mark.asyncio
async def test_wait_until_field_uses_record_timestamp(capabilities):
    ctx, _ = make_context(
        capabilities, record={"id": "lead-1", "meeting_at": "2024-03-05T14:00:00Z"}
    )
    result = await execute_step(WaitStep(id="w", until_field="meeting_at"), ctx)
    assert result.waiting_for.resume_at == datetime(2024, 3, 5, 14, 0, tzinfo=timezone.utc)

    ctx, _ = make_context(capabilities, record={"id": "lead-1"})
    with pytest.raises(StepExecutionError):
        await execute_step(WaitStep(id="w", until_field="meeting_at"), ctx)


@pytest.mark.asyncio
async def test_wait_for_field_change(capabilities):
    ctx, _ = make_context(capabilities)
    result = await execute_step(
        WaitStep(id="w", field="status", expected_value="signed", next_step_id="n"), ctx
    )
    assert result.waiting_for == FieldChangeWait(field="status", expected_value="signed")


@pytest.mark.asyncio
async def test_webhook_non_2xx_is_a_warning(capabilities, webhooks):
    webhooks.status_code = 503
    ctx, history = make_context(capabilities)
    step = WebhookStep(
        id="hook", url="https://hooks.example.com/{{ record.id }}",
        payload={"lead": {"field": "id"}}, next_step_id="n",
    )

    result = await execute_step(step, ctx)

    assert result.next_step_id == "n"
    assert webhooks.calls[0]["url"] == "https://hooks.example.com/lead-1"
    assert webhooks.calls[0]["payload"] == {"lead": "lead-1"}
    assert history[0].status == "warning"
    assert history[0].detail["status_code"] == 503


@pytest.mark.asyncio
async def test_webhook_network_error_is_a_warning(capabilities, webhooks):
    webhooks.error = httpx.ConnectError("refused")
    ctx, history = make_context(capabilities)
    result = await execute_step(WebhookStep(id="hook", url="https://x.test"), ctx)
    assert isinstance(result, Advance)
    assert history[0].status == "warning"


@pytest.mark.asyncio
async def test_httpx_webhook_client_posts_json():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("x-token")
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        webhook_client = HttpxWebhookClient(client=client)
        status = await webhook_client.send(
            "https://hooks.example.com/in", {"a": 1}, headers={"X-Token": "t"}
        )

    assert status == 202
    assert seen == {"method": "POST", "body": {"a": 1}, "auth": "t"}
