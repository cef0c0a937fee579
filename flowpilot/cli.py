"""Command line interface for running flowpilot workers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError

from flowpilot.config import load_config
from flowpilot.contracts import WorkflowGraph
from flowpilot.dispatch import TriggerEmitter
from flowpilot.errors import FlowpilotError
from flowpilot.nodes import build_registry
from flowpilot.persistence import (
    RunStatus,
    WorkflowDefinition,
    WorkflowVersion,
    get_repository,
)
from flowpilot.transports import get_event_log

app = typer.Typer(help="CLI for flowpilot workflows")

# Command groups
runs_app = typer.Typer(help="Inspect workflow runs")
trigger_app = typer.Typer(help="Emit trigger events")
nodes_app = typer.Typer(help="Inspect available node kinds")
workflow_app = typer.Typer(help="Validate and publish workflow graphs")

app.add_typer(runs_app, name="runs")
app.add_typer(trigger_app, name="trigger")
app.add_typer(nodes_app, name="nodes")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level for the process"),
) -> None:
    """flowpilot CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("serve")
def serve(lifespan: Optional[float] = None) -> None:
    """
    Run a workflow worker: trigger ingestion, scheduler and executor pool.

    Several workers may run against the same database and event log; they
    share the trigger stream through one consumer group.

    Example:
        flowpilot serve
        flowpilot serve --lifespan 300
    """
    from flowpilot.service import WorkflowService

    service = WorkflowService.from_config(load_config())
    typer.echo(f"Starting worker: {service.config.event_log.consumer}")
    asyncio.run(service.start(lifespan=lifespan))


@runs_app.command("list")
def runs_list(
    tenant: Optional[str] = None,
    status: Optional[RunStatus] = None,
    limit: int = 50,
) -> None:
    """
    List recent runs with their status.

    Example:
        flowpilot runs list --status waiting
        # Output: 0b6c...    tenant-1    waiting    wait_1
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(tenant_id=tenant, status=status, limit=limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.tenant_id}\t{run.status.value}\t{run.cursor or '-'}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """Show a run's status, context and node-by-node execution history."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.definition_id} (version {run.version_id})")
    if run.error:
        typer.echo(f"Error: {run.error}")
    typer.echo(f"Context: {json.dumps(run.context, default=str)}")
    for record in asyncio.run(repo.list_node_records(run_id)):
        typer.echo(
            f"- {record.node_id} [{record.node_kind}]: {record.status}"
            + (f" -> {record.handle}" if record.handle else "")
            + (f" ({record.error})" if record.error else "")
        )


@trigger_app.command("emit")
def trigger_emit(
    event_type: str,
    tenant: str = typer.Option(..., help="Tenant the event belongs to"),
    payload: str = typer.Option("{}", help="JSON payload"),
    definition_id: Optional[str] = typer.Option(
        None, help="Target one workflow definition only"
    ),
) -> None:
    """
    Append a direct trigger event to the trigger stream.

    Example:
        flowpilot trigger emit lead-added --tenant t1 --payload '{"lead": {"pipeline_id": "p1"}}'
        flowpilot trigger emit manual --tenant t1 --definition-id 42
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if definition_id:
        data["definition_id"] = definition_id

    async def _emit() -> str:
        event_log = get_event_log()
        await event_log.connect()
        try:
            return await TriggerEmitter(event_log, stream=load_config().event_log.stream).emit(
                event_type, tenant, data
            )
        finally:
            await event_log.disconnect()

    entry_id = asyncio.run(_emit())
    typer.echo(f"Emitted {event_type} as {entry_id}")


@nodes_app.command("list")
def nodes_list() -> None:
    """List registered node kinds grouped by family."""
    registry = build_registry()
    for family, kinds in registry.by_family().items():
        typer.echo(f"{family}:")
        for kind in kinds:
            typer.echo(f"  {kind}")


def _load_document(path: Path) -> dict[str, Any]:
    text = path.read_text()
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Workflow file must contain an object")
    return data


def _load_graph(path: Path) -> tuple[dict[str, Any], WorkflowGraph]:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        document = _load_document(path)
        graph = WorkflowGraph.model_validate(document.get("graph", document))
        build_registry().validate(graph)
    except (ValueError, ValidationError, FlowpilotError) as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return document, graph


@workflow_app.command("validate")
def workflow_validate(file: Path) -> None:
    """
    Check a workflow graph file (JSON or YAML).

    The file holds either ``{nodes, edges}`` or a document with a ``graph``
    key. Edges must reference existing nodes, every node kind must be
    registered, and the graph must contain a trigger node.
    """
    _, graph = _load_graph(file)
    typer.echo(f"Workflow is valid: {len(graph.nodes)} nodes, {len(graph.edges)} edges")


@workflow_app.command("publish")
def workflow_publish(
    file: Path,
    tenant: str = typer.Option(..., help="Owning tenant"),
    name: Optional[str] = None,
) -> None:
    """
    Store a workflow file as a new active definition with a published version.

    Trigger types default to the kinds of the graph's trigger nodes;
    ``trigger_types`` and ``trigger_config`` keys in the document override them.
    """
    document, graph = _load_graph(file)
    registry = build_registry()
    trigger_types = document.get("trigger_types") or sorted(
        {node.kind for node in graph.nodes if registry.is_trigger(node.kind)}
    )
    definition = WorkflowDefinition(tenant_id=tenant, name=name or document.get("name") or file.stem)
    version = WorkflowVersion(
        definition_id=definition.id,
        is_published=True,
        graph=graph,
        trigger_types=trigger_types,
        trigger_config=document.get("trigger_config") or {},
    )

    async def _publish() -> None:
        repo = get_repository()
        await repo.save_definition(definition)
        await repo.save_version(version)

    asyncio.run(_publish())
    typer.echo(f"Published {definition.name} as {definition.id} (version {version.id})")
    typer.echo(f"Triggers: {', '.join(trigger_types)}")


if __name__ == "__main__":
    app()
