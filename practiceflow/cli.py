"""Command line interface for practiceflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from practiceflow.cli_utils.loading import (
    build_engine,
    load_definition_file,
    parse_record,
)
from practiceflow.config import PracticeflowConfig, load_config
from practiceflow.exceptions import PracticeflowError
from practiceflow.persistence import ExecutionStatus, WorkflowExecution
from practiceflow.scheduler import ResumeScheduler
from practiceflow.transports import get_transport
from practiceflow.triggers import TriggerDispatcher
from practiceflow.validation import ValidationResult, validate_workflow
from practiceflow.worker import ExecutionWorker

app = typer.Typer(help="CLI for practiceflow workflow automation")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting and driving executions")
scheduler_app = typer.Typer(help="Commands for the resume sweep")
worker_app = typer.Typer(help="Commands for queue workers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """practiceflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


def _config(ctx: typer.Context) -> PracticeflowConfig:
    return ctx.obj if isinstance(ctx.obj, PracticeflowConfig) else load_config()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _print_validation(result: ValidationResult) -> None:
    for error in result.errors:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    for warning in result.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)


def _print_execution(execution: WorkflowExecution) -> None:
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    typer.echo(f"Record: {execution.object_type} {execution.record_id}")
    if execution.current_step_id:
        typer.echo(f"Current step: {execution.current_step_id}")
    if execution.waiting_for is not None:
        typer.echo(f"Waiting for: {execution.waiting_for.model_dump_json()}")
    if execution.error:
        code = execution.failure_code.value if execution.failure_code else "error"
        typer.echo(f"Error ({code}): {execution.error}")
    if execution.variables:
        typer.echo(f"Variables: {json.dumps(execution.variables, default=str)}")
    for entry in execution.history:
        label = entry.step_id or "-"
        typer.echo(f"- {entry.at.isoformat()} {label}: {entry.event} ({entry.status})")


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("list")
def workflow_list(ctx: typer.Context) -> None:
    """List workflow definitions in evaluation order."""
    engine = build_engine(_config(ctx))
    definitions = asyncio.run(engine.repository.list_definitions())
    if not definitions:
        typer.echo("No workflows found")
        return
    for definition in definitions:
        state = "active" if definition.is_active else "inactive"
        typer.echo(
            f"{definition.id}\t{definition.name}\t{definition.object_type.value}\t"
            f"{definition.trigger_type.value}\t{state}"
        )


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a definition with its steps and validation findings."""
    engine = build_engine(_config(ctx))
    definition = asyncio.run(engine.repository.get_definition(workflow_id))
    if definition is None:
        _fail("Workflow not found")
    typer.echo(f"Workflow {definition.id}: {definition.name}")
    typer.echo(
        f"Trigger: {definition.trigger_type.value} on {definition.object_type.value}"
    )
    typer.echo(f"Executions: {definition.execution_count}")
    for step in definition.steps:
        marker = "*" if step.id == definition.start_step_id else " "
        targets = ", ".join(step.successors()) or "(end)"
        typer.echo(f"{marker} {step.id} [{step.kind}] -> {targets}")
    _print_validation(validate_workflow(definition))


@workflow_app.command("import")
def workflow_import(
    ctx: typer.Context,
    path: Path,
    force: bool = typer.Option(False, help="Save even when validation fails"),
) -> None:
    """Load a YAML or JSON definition file into the repository.

    Example:
        practiceflow workflow import ./guides/lead_follow_up.yaml
    """
    if not path.exists():
        _fail("Specified path does not exist")
    try:
        definition = load_definition_file(path)
    except (ValueError, yaml.YAMLError) as exc:
        _fail(f"Invalid definition: {exc}")
    result = validate_workflow(definition)
    _print_validation(result)
    if not result.is_valid and not force:
        _fail("Definition not imported")
    engine = build_engine(_config(ctx))
    asyncio.run(engine.repository.save_definition(definition))
    typer.echo(f"Imported workflow {definition.id}")


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """Validate a definition file without importing it."""
    if not path.exists():
        _fail("Specified path does not exist")
    try:
        definition = load_definition_file(path)
    except (ValueError, yaml.YAMLError) as exc:
        _fail(f"Invalid definition: {exc}")
    result = validate_workflow(definition)
    _print_validation(result)
    if not result.is_valid:
        raise typer.Exit(code=1)
    typer.echo("Workflow is valid")


@workflow_app.command("trigger")
def workflow_trigger(
    ctx: typer.Context,
    workflow_id: str,
    record: Optional[str] = typer.Option(None, help="Record as a JSON object"),
) -> None:
    """Start a workflow manually for one record.

    Example:
        practiceflow workflow trigger <id> --record '{"id": "lead-1", "email": "a@b.c"}'
    """
    config = _config(ctx)
    engine = build_engine(config)
    transport = get_transport(config=config) if config.engine.dispatch_mode == "queue" else None
    dispatcher = TriggerDispatcher(engine, transport=transport)
    try:
        data = parse_record(record)
    except ValueError as exc:
        _fail(f"Invalid record: {exc}")

    async def _run() -> WorkflowExecution:
        execution_id = await dispatcher.invoke_manual(workflow_id, data)
        return await engine.repository.get_execution(execution_id)

    try:
        execution = asyncio.run(_run())
    except PracticeflowError as exc:
        _fail(str(exc))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


# ----------------------------------------------------------------------
# execution


@execution_app.command("list")
def execution_list(
    ctx: typer.Context,
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow"),
    limit: int = typer.Option(50, help="Maximum rows to show"),
) -> None:
    """List executions, most recent first."""
    engine = build_engine(_config(ctx))
    executions = asyncio.run(
        engine.repository.list_executions(
            status=status, workflow_id=workflow_id, limit=limit
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}\t"
            f"{execution.current_step_id or '-'}"
        )


@execution_app.command("show")
def execution_show(ctx: typer.Context, execution_id: str) -> None:
    """Show an execution's state and history."""
    engine = build_engine(_config(ctx))
    execution = asyncio.run(engine.repository.get_execution(execution_id))
    if execution is None:
        _fail("Execution not found")
    _print_execution(execution)


def _drive(ctx: typer.Context, action: str, execution_id: str) -> None:
    engine = build_engine(_config(ctx))
    operation = {
        "process": engine.process_execution,
        "cancel": engine.cancel_execution,
        "retry": engine.retry_execution,
    }[action]
    try:
        execution = asyncio.run(operation(execution_id))
    except PracticeflowError as exc:
        _fail(str(exc))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("process")
def execution_process(ctx: typer.Context, execution_id: str) -> None:
    """Re-invoke the engine for one execution."""
    _drive(ctx, "process", execution_id)


@execution_app.command("cancel")
def execution_cancel(ctx: typer.Context, execution_id: str) -> None:
    """Cancel a running or waiting execution."""
    _drive(ctx, "cancel", execution_id)


@execution_app.command("retry")
def execution_retry(ctx: typer.Context, execution_id: str) -> None:
    """Retry a failed execution from the step that failed."""
    _drive(ctx, "retry", execution_id)


# ----------------------------------------------------------------------
# scheduler / worker


@scheduler_app.command("sweep")
def scheduler_sweep(
    ctx: typer.Context,
    batch_size: Optional[int] = typer.Option(None, help="Executions per sweep"),
) -> None:
    """Run one resume sweep over due delay waits."""
    config = _config(ctx)
    scheduler = ResumeScheduler(build_engine(config))
    result = asyncio.run(scheduler.sweep(batch_size or config.scheduler.batch_size))
    typer.echo(
        f"processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped}"
    )


@scheduler_app.command("recover")
def scheduler_recover(
    ctx: typer.Context,
    batch_size: Optional[int] = typer.Option(None, help="Executions per pass"),
) -> None:
    """Re-invoke executions left in running after a crash."""
    config = _config(ctx)
    scheduler = ResumeScheduler(build_engine(config))
    result = asyncio.run(
        scheduler.recover_running(batch_size or config.scheduler.batch_size)
    )
    typer.echo(
        f"processed={result.processed} succeeded={result.succeeded} failed={result.failed}"
    )


@scheduler_app.command("run")
def scheduler_run(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps"),
    iterations: Optional[int] = typer.Option(None, help="Stop after this many sweeps"),
) -> None:
    """Sweep periodically until stopped."""
    config = _config(ctx)
    scheduler = ResumeScheduler(build_engine(config))
    typer.echo("Starting scheduler")
    asyncio.run(
        scheduler.run_forever(
            interval=interval if interval is not None else config.scheduler.interval_seconds,
            batch_size=config.scheduler.batch_size,
            iterations=iterations,
        )
    )


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """Consume execution messages from the configured transport."""
    config = _config(ctx)
    worker = ExecutionWorker(get_transport(config=config), build_engine(config))
    typer.echo("Starting worker")
    asyncio.run(worker.start(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
