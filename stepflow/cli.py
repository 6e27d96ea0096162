"""Command line interface for validating and running stepflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from stepflow.config import load_config
from stepflow.engine import ExecutionEngine
from stepflow.errors import NotFoundError, StateError, ValidationError
from stepflow.execution import Execution, ExecutionStatus
from stepflow.persistence import get_repository
from stepflow.store import InMemoryDefinitionStore, load_definition
from stepflow.transports import get_transport

app = typer.Typer(help="CLI for stepflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Stepflow CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_input(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"--input is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho("--input must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return data


def _echo_execution(execution: Execution, with_results: bool = False) -> None:
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id} v{execution.workflow_version}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.output is not None:
        typer.echo(f"Output: {json.dumps(execution.output, default=str)}")
    if with_results:
        for result in execution.step_results:
            outcome = "ok" if result.success else f"failed ({result.error})"
            typer.echo(
                f"- {result.step_id} attempt {result.attempt}: {outcome} "
                f"[{result.duration_ms:.0f}ms]"
            )


@workflow_app.command("validate")
def workflow_validate(workflow_path: Path) -> None:
    """
    Check a workflow file without running it.

    Loads the YAML or JSON definition and reports every problem that would
    block publishing.

    Example:
        stepflow workflow validate ./workflows/order.yaml
    """
    try:
        definition = load_definition(workflow_path)
    except FileNotFoundError:
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ValidationError as exc:
        for problem in exc.problems:
            typer.echo(f"- {problem}")
        raise typer.Exit(code=1)

    problems = definition.validate_structure()
    if problems:
        typer.echo(f"Workflow {definition.name} is invalid:")
        for problem in problems:
            typer.echo(f"- {problem}")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {definition.name} is valid ({len(definition.steps)} steps)")


async def _run_workflow(workflow_path: Path, input_data: Dict[str, Any]) -> Execution:
    definition = load_definition(workflow_path)
    definition.publish()
    store = InMemoryDefinitionStore()
    await store.save(definition)

    config = load_config()
    engine = ExecutionEngine.from_config(
        store, config, repository=get_repository(config=config)
    )
    try:
        return await engine.run(definition.id, input_data)
    finally:
        await engine.shutdown()


@workflow_app.command("run")
def workflow_run(
    workflow_path: Path,
    input: Optional[str] = typer.Option(None, help="JSON object passed as workflow input"),
) -> None:
    """
    Publish a workflow file and execute it to completion.

    Example:
        stepflow workflow run ./workflows/order.yaml --input '{"order_id": 7}'
    """
    input_data = _parse_input(input)
    try:
        execution = asyncio.run(_run_workflow(workflow_path, input_data))
    except FileNotFoundError:
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ValidationError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    _echo_execution(execution)
    if execution.status != ExecutionStatus.COMPLETED:
        raise typer.Exit(code=1)


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List stored executions with their status.

    Example:
        stepflow execution list --status failed
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(status))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\tv{execution.workflow_version}"
            f"\t{execution.status.value}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show status, output and every step attempt of an execution."""
    repo = get_repository()
    execution = asyncio.run(repo.load(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    _echo_execution(execution, with_results=True)


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel a running execution and publish its cancellation event.

    An engine driving the execution notices the stored status before its
    next step and stops.
    """
    try:
        asyncio.run(_cancel_execution(execution_id))
    except NotFoundError:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    except StateError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution_id} cancelled")


async def _cancel_execution(execution_id: str) -> None:
    config = load_config()
    repo = get_repository()
    execution = await repo.load(execution_id)
    if execution is None:
        raise NotFoundError(f"Execution {execution_id} not found")
    cancelled, events = execution.cancel()
    await repo.save(cancelled)
    transport = get_transport(config=config)
    try:
        for event in events:
            await transport.publish_event(event)
    finally:
        await transport.disconnect()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
