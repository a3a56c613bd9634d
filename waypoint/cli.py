"""Command line interface for waypoint workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import typer

from waypoint import WorkflowEngine, get_escalation_store, get_repository
from waypoint.config import load_config
from waypoint.contracts import RunStatus, WorkflowResult
from waypoint.errors import WaypointError
from waypoint.escalation import EscalationCoordinator
from waypoint.persistence import EscalationStatus
from waypoint.transports import get_transport

app = typer.Typer(help="CLI for waypoint workflows")

escalation_app = typer.Typer(help="Commands for managing escalations")
app.add_typer(escalation_app, name="escalation")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """Waypoint CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    config = load_config()
    transport = get_transport(config=config)
    return WorkflowEngine(
        repository=get_repository(),
        escalations=EscalationCoordinator(get_escalation_store(), transport=transport),
        transport=transport,
        config=config,
    )


def _call(action: Callable[[WorkflowEngine], Awaitable[Any]]) -> Any:
    """Run ``action`` against a fresh engine and close its transport."""

    async def _main() -> Any:
        engine = _engine()
        try:
            return await action(engine)
        finally:
            await engine.transport.disconnect()

    try:
        return asyncio.run(_main())
    except WaypointError as e:
        typer.secho(f"{type(e).__name__}: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _echo_result(result: WorkflowResult) -> None:
    typer.echo(f"Run: {result.run_id}")
    typer.echo(f"Workflow: {result.workflow_name}")
    typer.echo(f"Status: {result.status.value}{' (paused)' if result.paused else ''}")
    typer.echo(f"Progress: {result.progress_percentage:.0f}%")
    if result.pending_escalation_id:
        typer.echo(f"Pending escalation: {result.pending_escalation_id}")
    if result.escalation_budget_exceeded:
        typer.secho(
            f"Escalation budget exceeded ({result.escalation_count} > {result.max_escalations})",
            fg=typer.colors.YELLOW,
        )
    if result.error:
        typer.secho(
            f"Error at {result.error.step_id}: {result.error.message}",
            fg=typer.colors.RED,
        )


@app.command("run")
def run_workflow(
    workflow_file: Path,
    run_id: Optional[str] = typer.Option(None, help="Explicit run id"),
    var: List[str] = typer.Option([], "--var", help="Initial variable as key=value"),
    max_escalations: Optional[int] = typer.Option(None, help="Escalation budget"),
    timeout: Optional[float] = typer.Option(None, help="Run timeout in seconds"),
) -> None:
    """Start a workflow run from a YAML definition."""
    variables = {}
    for item in var:
        key, sep, value = item.partition("=")
        if not sep:
            typer.secho(f"Invalid --var {item!r}, expected key=value", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        variables[key] = _parse_value(value)

    overrides = {}
    if max_escalations is not None:
        overrides["max_escalations"] = max_escalations
    if timeout is not None:
        overrides["timeout"] = timeout
    result = _call(
        lambda engine: engine.start(
            workflow_file,
            run_id=run_id,
            variables=variables,
            options=engine.default_options(**overrides),
        )
    )
    _echo_result(result)
    if result.status == RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("status")
def run_status(run_id: str) -> None:
    """Show the state of a run."""
    state = _call(lambda engine: engine.status(run_id))
    typer.echo(f"Run: {state.run_id}")
    typer.echo(f"Workflow: {state.workflow_name}")
    typer.echo(f"Status: {state.status.value}{' (paused)' if state.paused else ''}")
    typer.echo(f"Current step: {state.current_step_id or '-'}")
    typer.echo(f"Progress: {state.progress_percentage:.0f}%")
    typer.echo(f"Completed: {', '.join(state.completed_step_ids) or '-'}")
    typer.echo(f"Escalations: {state.escalation_count}")
    if state.pending_escalation_id:
        typer.echo(f"Pending escalation: {state.pending_escalation_id}")
    if state.error:
        typer.echo(f"Error: {state.error.message}")


@app.command("runs")
def list_runs(
    status: Optional[RunStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List runs with their status."""
    states = _call(lambda engine: engine.list_runs(status))
    if not states:
        typer.echo("No runs found")
        return
    for state in states:
        typer.echo(
            f"{state.run_id}\t{state.workflow_name}\t{state.status.value}"
            f"\t{state.progress_percentage:.0f}%"
        )


@app.command("pause")
def pause_run(run_id: str) -> None:
    """Pause a run at its next step boundary."""
    _echo_result(_call(lambda engine: engine.pause(run_id)))


@app.command("cancel")
def cancel_run(run_id: str, reason: str = typer.Option("Cancelled by user")) -> None:
    """Cancel a run and its open escalation."""
    _echo_result(_call(lambda engine: engine.cancel(run_id, reason=reason)))


@app.command("resume")
def resume_run(
    run_id: str,
    response: Optional[str] = typer.Option(
        None, help="Answer for the pending escalation (JSON or plain text)"
    ),
) -> None:
    """Resume a paused or parked run."""
    if response is None:
        result = _call(lambda engine: engine.resume(run_id))
    else:
        result = _call(lambda engine: engine.resume(run_id, _parse_value(response)))
    _echo_result(result)


@escalation_app.command("list")
def escalation_list(
    status: Optional[EscalationStatus] = typer.Option(None, help="Filter by status"),
    run_id: Optional[str] = typer.Option(None, help="Filter by run id"),
) -> None:
    """List escalations."""
    escalations = _call(
        lambda engine: engine.list_escalations(status=status, workflow_run_id=run_id)
    )
    if not escalations:
        typer.echo("No escalations found")
        return
    for esc in escalations:
        typer.echo(
            f"{esc.id}\t{esc.status.value}\t{esc.workflow_run_id}\t{esc.step_id}"
            f"\t{esc.confidence:.2f}\t{esc.question}"
        )


@escalation_app.command("show")
def escalation_show(escalation_id: str) -> None:
    """Show one escalation."""
    esc = _call(lambda engine: engine.escalations.get_by_id(escalation_id))
    if esc is None:
        typer.secho("Escalation not found", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Escalation: {esc.id}")
    typer.echo(f"Run: {esc.workflow_run_id} ({esc.workflow_name})")
    typer.echo(f"Step: {esc.step_id}")
    typer.echo(f"Question: {esc.question}")
    typer.echo(f"Confidence: {esc.confidence:.2f}")
    typer.echo(f"Reasoning: {esc.ai_reasoning}")
    typer.echo(f"Status: {esc.status.value}")
    if esc.response is not None:
        typer.echo(f"Response: {json.dumps(esc.response_value)}")
        typer.echo(f"Resolution time: {esc.resolution_time_ms}ms")


@escalation_app.command("respond")
def escalation_respond(escalation_id: str, response: str) -> None:
    """Answer an escalation and resume its run."""
    answer = _parse_value(response)
    result = _call(lambda engine: engine.respond_to_escalation(escalation_id, answer))
    typer.echo(f"Escalation {escalation_id} resolved")
    if result is not None:
        _echo_result(result)


@escalation_app.command("metrics")
def escalation_metrics(
    by: str = typer.Option("workflow_name", help="Breakdown category"),
) -> None:
    """Show aggregate escalation statistics."""
    if by not in ("workflow_name", "workflow_run_id", "step_id", "status"):
        typer.secho(f"Unknown category: {by}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    metrics = _call(lambda engine: engine.escalations.get_metrics(by))
    typer.echo(f"Total: {metrics.total_escalations}")
    typer.echo(f"Resolved: {metrics.resolved_count}")
    typer.echo(f"Average resolution time: {metrics.average_resolution_time_ms}ms")
    for key, count in sorted(metrics.category_breakdown.items()):
        typer.echo(f"  {key}: {count}")


if __name__ == "__main__":
    app()
