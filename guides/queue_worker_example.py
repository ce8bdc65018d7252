"""Hand executions to a worker over the configured transport.

Start a worker in one shell:

    PRACTICEFLOW_TRANSPORT=redis PRACTICEFLOW_DATABASE_URL=sqlite:///tmp/flows.db \
        practiceflow worker run

then run this script with the same environment to publish a manual run.
"""

import asyncio

from practiceflow import (
    TriggerDispatcher,
    WorkflowDefinition,
    WorkflowEngine,
    get_repository,
    get_transport,
    in_memory_capabilities,
)


async def main():
    transport = get_transport()
    await transport.connect()

    repository = get_repository()
    engine = WorkflowEngine(repository, in_memory_capabilities())
    dispatcher = TriggerDispatcher(engine, transport=transport)

    definition = WorkflowDefinition(
        name="Invoice reminder",
        object_type="invoice",
        trigger_type="manual",
        steps=[
            {"id": "remind", "kind": "send_email", "template_id": "invoice-due", "next_step_id": "done"},
            {"id": "done", "kind": "end"},
        ],
    )
    await repository.save_definition(definition)

    execution_id = await dispatcher.invoke_manual(
        definition.id, {"id": "inv-1001", "email": "billing@example.com"}
    )
    print(f"Published execution {execution_id}")

    await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
