"""Run the lead follow-up workflow end to end in a single process.

The record store, notifier and task list are in-memory; pass a SQLite URL as
the first argument to keep executions on disk between runs.
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

from practiceflow import (
    ResumeScheduler,
    TriggerDispatcher,
    WorkflowEngine,
    get_repository,
    in_memory_capabilities,
    validate_workflow,
)
from practiceflow.cli_utils.loading import load_definition_file
from practiceflow.utils.clock import utcnow


async def main():
    database_url = sys.argv[1] if len(sys.argv) > 1 else None
    repository = get_repository(database_url)
    capabilities = in_memory_capabilities()

    definition = load_definition_file(Path(__file__).with_name("lead_follow_up.yaml"))
    result = validate_workflow(definition)
    if not result.is_valid:
        print(f"Definition has errors: {result.errors}")
        return
    await repository.save_definition(definition)

    # Pretend two days pass between the trigger and the sweep
    offset = timedelta()
    engine = WorkflowEngine(repository, capabilities, clock=lambda: utcnow() + offset)
    dispatcher = TriggerDispatcher(engine)

    lead = capabilities.records.add(
        "lead", {"first_name": "Ada", "email": "ada@example.com", "status": "new"}
    )
    [execution_id] = await dispatcher.on_domain_event("lead", "created", lead)
    execution = await repository.get_execution(execution_id)
    print(f"Execution {execution_id} is {execution.status.value}, resumes at {execution.next_run_at}")

    offset = timedelta(days=2)
    sweep = await ResumeScheduler(engine).sweep()
    print(f"Sweep: {sweep.processed} processed, {sweep.failed} failed")

    execution = await repository.get_execution(execution_id)
    print(f"Execution {execution_id} is {execution.status.value}")
    for entry in execution.history:
        print(f"  {entry.step_id or '-'}: {entry.event} ({entry.status})")
    print(f"Lead status: {(await capabilities.records.get_record('lead', lead['id']))['status']}")
    print(f"Emails sent: {len(capabilities.notifier.emails)}, tasks: {len(capabilities.tasks.tasks)}")


if __name__ == "__main__":
    asyncio.run(main())
