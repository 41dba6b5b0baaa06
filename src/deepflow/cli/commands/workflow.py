"""Workflow commands: run, resume, status, pause, cancel, list, show, preview."""

from __future__ import annotations

import json

import typer
from rich.panel import Panel
from rich.table import Table

from deepflow.errors import DeepflowError
from deepflow.workflow import (
    DEFAULT_WORKFLOW_ID,
    ContentEvent,
    ErrorEvent,
    StatusEvent,
    StepEvent,
    UsageEvent,
    WorkflowExecution,
    WorkflowOrchestrator,
)

from ..helpers import (
    JSON_OPTION,
    USER_OPTION,
    console,
    fail,
    get_orchestrator,
    run_async,
    styled_status,
)

workflows_app = typer.Typer(help="Browse workflow definitions")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _consume(orchestrator: WorkflowOrchestrator, execution_id: str, sse: bool) -> None:
    """Print a run's event stream as it arrives."""
    if sse:
        async for frame in orchestrator.stream_sse(execution_id):
            print(frame, end="", flush=True)
        return

    async for event in orchestrator.run(execution_id):
        if isinstance(event, StepEvent):
            if event.status == "running":
                console.print(f"\n[bold cyan]Step {event.number}:[/bold cyan] {event.name}")
        elif isinstance(event, ContentEvent):
            console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, StatusEvent) and event.status != "running":
            reason = f" ({event.reason})" if event.reason else ""
            console.print(f"\n\nStatus: {styled_status(event.status)}{reason}")
        elif isinstance(event, ErrorEvent):
            console.print(f"\n[red]{event.kind}:[/red] {event.message}")
        elif isinstance(event, UsageEvent):
            usage = event.usage
            console.print(
                f"[dim]{usage['total_tokens']:,} tokens, "
                f"${usage['total_cost']:.4f} over {usage['requests']} requests[/dim]"
            )


def _print_execution(execution: WorkflowExecution) -> None:
    lines = [
        f"Workflow: [bold]{execution.definition_id}[/bold]",
        f"User: {execution.user_id}",
        f"Status: {styled_status(execution.status.value)}",
        f"Progress: {execution.current_step}/{execution.total_steps} "
        f"({execution.progress:.0f}%)",
        f"Cost: ${execution.total_cost:.4f}",
    ]
    if execution.current_step_name:
        lines.append(f"Current step: {execution.current_step_name}")
    if execution.status_reason:
        lines.append(f"Reason: {execution.status_reason}")
    if execution.error:
        error = execution.error
        lines.append(f"Error: [red]{error.get('kind')}[/red] {error.get('message')}")
    console.print(Panel("\n".join(lines), title=f"Execution {execution.id}", border_style="blue"))


# ---------------------------------------------------------------------------
# Top-level commands
# ---------------------------------------------------------------------------


def run(
    query: str = typer.Argument(..., help="Research question or initial input"),
    workflow: str = typer.Option(DEFAULT_WORKFLOW_ID, "--workflow", "-w", help="Workflow ID"),
    user: str = USER_OPTION,
    sse: bool = typer.Option(False, "--sse", help="Print raw server-sent-event frames"),
):
    """Run a workflow and stream its output."""
    orchestrator = get_orchestrator()
    try:
        execution = orchestrator.start(workflow, user, query)
        if not sse:
            console.print(f"[dim]Execution:[/dim] {execution.id}")
        run_async(_consume(orchestrator, execution.id, sse))
    except DeepflowError as e:
        raise fail(e)


def resume(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    sse: bool = typer.Option(False, "--sse", help="Print raw server-sent-event frames"),
):
    """Resume a paused execution from its first incomplete step."""
    orchestrator = get_orchestrator()
    try:
        execution = orchestrator.get_status(execution_id)
        if execution.status.value != "paused":
            console.print(
                f"[yellow]Execution is {execution.status.value}; only paused executions "
                "can be resumed[/yellow]"
            )
            raise typer.Exit(1)
        run_async(_consume(orchestrator, execution_id, sse))
    except DeepflowError as e:
        raise fail(e)


def status(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    json_output: bool = JSON_OPTION,
):
    """Show an execution's status and progress."""
    orchestrator = get_orchestrator()
    try:
        execution = orchestrator.get_status(execution_id)
    except DeepflowError as e:
        raise fail(e)

    if json_output:
        print(json.dumps(execution.to_dict(), indent=2, default=str))
        return
    _print_execution(execution)


def _set_status(execution_id: str, target: str, step_name: str | None) -> None:
    orchestrator = get_orchestrator()
    try:
        execution = orchestrator.update_status(execution_id, target, current_step_name=step_name)
    except DeepflowError as e:
        raise fail(e)
    console.print(f"Execution {execution.id} is now {styled_status(execution.status.value)}")


def pause(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    step_name: str = typer.Option(None, "--step-name", help="Step name to display"),
):
    """Pause an execution before its next step."""
    _set_status(execution_id, "paused", step_name)


def cancel(execution_id: str = typer.Argument(..., help="Execution ID")):
    """Cancel an execution; it can never be resumed."""
    _set_status(execution_id, "cancelled", None)


def executions(
    user: str = typer.Option(None, "--user", "-u", help="Filter by user"),
    status_filter: str = typer.Option(None, "--status", "-s", help="Filter by status"),
    json_output: bool = JSON_OPTION,
):
    """List recent executions."""
    orchestrator = get_orchestrator()
    statuses = [status_filter] if status_filter else None
    try:
        records = orchestrator.list_executions(user_id=user, statuses=statuses)
    except ValueError:
        console.print(f"[red]Unknown status:[/red] {status_filter}")
        raise typer.Exit(1)

    if json_output:
        print(json.dumps([r.to_dict() for r in records], indent=2, default=str))
        return

    if not records:
        console.print("[yellow]No executions[/yellow]")
        return

    table = Table(title="Executions")
    table.add_column("ID", style="dim")
    table.add_column("Workflow", style="cyan")
    table.add_column("User")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Cost", justify="right", style="green")

    for record in records:
        table.add_row(
            record.id,
            record.definition_id,
            record.user_id,
            styled_status(record.status.value),
            f"{record.current_step}/{record.total_steps}",
            f"${record.total_cost:.4f}",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# workflows sub-app
# ---------------------------------------------------------------------------


@workflows_app.command("list")
def list_workflows(json_output: bool = JSON_OPTION):
    """List registered workflow definitions."""
    orchestrator = get_orchestrator()
    definitions = orchestrator.workflows.list_workflows()

    if json_output:
        print(json.dumps([d.to_dict() for d in definitions], indent=2, default=str))
        return

    table = Table(title="Available Workflows")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Description")
    table.add_column("Steps", justify="right")

    for definition in definitions:
        table.add_row(
            definition.id,
            definition.name or "-",
            (definition.description or "-")[:50],
            str(len(definition.steps)),
        )

    console.print(table)


@workflows_app.command("show")
def show_workflow(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Show a workflow's steps and dependencies."""
    orchestrator = get_orchestrator()
    try:
        definition = orchestrator.workflows.get(workflow_id)
    except DeepflowError as e:
        raise fail(e)

    table = Table(title=definition.name or definition.id)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Role")
    table.add_column("Model")
    table.add_column("Depends on")
    table.add_column("Est. cost", justify="right", style="green")

    for number, step in enumerate(definition.steps, start=1):
        estimate = step.cost_estimate.estimated_cost
        table.add_row(
            str(number),
            step.display_name,
            step.agent_role,
            step.model,
            ", ".join(step.depends_on) or "-",
            f"${estimate:.4f}" if estimate is not None else "-",
        )

    console.print(table)


@workflows_app.command("preview")
def preview_workflow(
    workflow_id: str = typer.Argument(DEFAULT_WORKFLOW_ID, help="Workflow ID"),
    user: str = USER_OPTION,
    json_output: bool = JSON_OPTION,
):
    """Project a workflow's cost against your spend limits."""
    orchestrator = get_orchestrator()
    try:
        prediction = orchestrator.preview_cost(workflow_id, user)
    except DeepflowError as e:
        raise fail(e)

    if json_output:
        print(prediction.model_dump_json(indent=2))
        return

    color = "red" if prediction.will_exceed_daily or prediction.will_exceed_monthly else "green"
    console.print(
        Panel(
            f"Estimated cost: [bold]${prediction.estimated_cost:.4f}[/bold]\n"
            f"Estimated tokens: [bold]{prediction.estimated_tokens:,}[/bold]\n"
            f"Exceeds daily limit: {prediction.will_exceed_daily}\n"
            f"Exceeds monthly limit: {prediction.will_exceed_monthly}\n\n"
            f"[{color}]{prediction.recommendation}[/{color}]",
            title=f"Cost Preview: {workflow_id}",
            border_style="blue",
        )
    )
