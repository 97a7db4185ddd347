"""Command line interface for running crewflow workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from crewflow.agents import OllamaInvoker
from crewflow.agents.base import AgentInvoker
from crewflow.config import CrewflowConfig, load_config
from crewflow.contracts import ApprovalDecision, ApprovalGate
from crewflow.errors import GateNotFound
from crewflow.loader import CrewFile, load_crew
from crewflow.persistence import get_run_log
from crewflow.runtime import Engine, build_engine
from crewflow.streaming import stream_execution

app = typer.Typer(help="CLI for crewflow workflows")

# Command groups
runs_app = typer.Typer(help="Commands for inspecting logged runs")

app.add_typer(runs_app, name="runs")


@app.callback()
def main() -> None:
    """crewflow CLI entry point."""
    pass


def _load_crew_or_exit(crew_file: Path) -> CrewFile:
    try:
        return load_crew(crew_file)
    except FileNotFoundError:
        typer.secho(f"Crew file not found: {crew_file}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ValidationError as e:
        typer.secho(f"Invalid crew file {crew_file}:\n{e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def build_invoker(crew: CrewFile, config: CrewflowConfig) -> AgentInvoker:
    """Return the agent invoker used by ``run``."""
    return OllamaInvoker(crew.profiles, config=config.ollama)


def _approval_listener(get_engine, auto_approve: bool, tasks: set):
    def on_request(gate: ApprovalGate) -> None:
        engine: Engine = get_engine()
        if auto_approve:
            typer.echo(f"Auto-approving step {gate.step_index} ({gate.step_name})")
            engine.approvals.provide_decision(
                gate.gate_id, ApprovalDecision(approved=True, user_id="cli")
            )
            return
        task = asyncio.get_running_loop().create_task(_prompt(engine, gate))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    return on_request


async def _prompt(engine: Engine, gate: ApprovalGate) -> None:
    approved = await asyncio.to_thread(
        typer.confirm,
        f"Approve step {gate.step_index} ({gate.step_name})?",
        default=False,
    )
    try:
        engine.approvals.provide_decision(
            gate.gate_id,
            ApprovalDecision(
                approved=approved,
                reason=None if approved else "Denied from the command line",
                user_id="cli",
            ),
        )
    except GateNotFound:
        typer.secho(f"Approval gate {gate.gate_id} is no longer pending", fg=typer.colors.YELLOW)


@app.command("run")
def run(
    crew_file: Path,
    input: str = typer.Option("", "--input", "-i", help="Input for the first step"),
    auto_approve: bool = typer.Option(
        False, help="Approve every approval gate without prompting"
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """
    Run the workflow of a crew file and stream its steps.

    Example:
        crewflow run crews/research.yaml --input "Summarize the release notes"
    """
    logging.basicConfig(level=log_level.upper())
    crew = _load_crew_or_exit(crew_file)
    config = load_config(str(config_path) if config_path else None)

    tasks: set = set()
    engine = build_engine(
        build_invoker(crew, config),
        config=config,
        agents=crew.profiles,
        on_approval_request=_approval_listener(lambda: engine, auto_approve, tasks),
    )

    async def _run() -> bool:
        success = False
        async for event in stream_execution(
            engine.executor, crew.crew.id, crew.crew.name, crew.workflow, input
        ):
            data = event.data
            if event.event == "run":
                typer.echo(f"Run {data['workflow_id']} started for crew {data['crew_name']}")
            elif event.event == "step":
                status = "ok" if data["success"] else f"failed: {data['error']}"
                typer.echo(
                    f"- step {data['definition_index']} {data['agent_name']}: {status}"
                )
                if data["success"] and data["output"]:
                    typer.echo(data["output"])
            elif event.event == "complete":
                typer.secho(
                    f"Completed in {data['total_duration']:.2f}s", fg=typer.colors.GREEN
                )
                success = True
            else:
                typer.secho(
                    f"Failed: {data.get('error') or 'one or more steps failed'}",
                    fg=typer.colors.RED,
                )
        return success

    if not asyncio.run(_run()):
        raise typer.Exit(code=1)


@app.command("validate")
def validate(crew_file: Path) -> None:
    """Check that a crew file is well formed and names only declared agents."""
    crew = _load_crew_or_exit(crew_file)
    missing = crew.missing_agents()
    if missing:
        typer.secho(f"Undeclared agents: {', '.join(missing)}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(
        f"{crew.crew.name}: {crew.workflow.type} workflow with "
        f"{len(crew.workflow.steps)} step(s) is valid"
    )


@runs_app.command("list")
def runs_list(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """List logged runs with their status."""
    run_log = get_run_log(config=load_config(str(config_path) if config_path else None))
    runs = asyncio.run(run_log.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for record in runs:
        typer.echo(f"{record.workflow_id}\t{record.crew_name}\t{record.status}")


@runs_app.command("show")
def runs_show(
    run_id: str,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """Show a logged run and its step history."""
    run_log = get_run_log(config=load_config(str(config_path) if config_path else None))
    record = asyncio.run(run_log.get_run(run_id))
    if record is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {record.workflow_id}: {record.status}")
    typer.echo(f"Crew: {record.crew_name} ({record.workflow_type})")
    if record.error:
        typer.echo(f"Error: {record.error}")
    for step in record.steps:
        status = "ok" if step.success else f"failed ({step.error})"
        typer.echo(
            f"- [{step.step_index}] step {step.definition_index} {step.agent_name}: "
            f"{status} {step.duration:.2f}s"
        )


if __name__ == "__main__":
    app()
