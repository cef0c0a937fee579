import asyncio
import json

import pytest
from typer.testing import CliRunner

import flowpilot.persistence as persistence
from flowpilot.cli import app
from flowpilot.persistence import (
    InMemoryWorkflowRepository,
    NodeExecutionRecord,
    RunStatus,
    WorkflowRun,
)

GRAPH = {
    "nodes": [
        {"id": "trigger_1", "type": "whatsapp-message", "config": {}},
        {"id": "stop_1", "type": "stop", "config": {}},
    ],
    "edges": [{"source": "trigger_1", "target": "stop_1"}],
}


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWPILOT_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWPILOT_EVENT_LOG", raising=False)
    monkeypatch.delenv("FLOWPILOT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _store_run(repo, status=RunStatus.PENDING) -> WorkflowRun:
    run = WorkflowRun(definition_id="d1", version_id="v1", tenant_id="t1", context={"a": 1})
    asyncio.run(repo.create_run(run))
    if status != RunStatus.PENDING:
        asyncio.run(repo.finish_run(run.id, status, error="boom"))
    return run


def test_runs_list_and_filter():
    repo = _setup_repo()
    pending = _store_run(repo)
    failed = _store_run(repo, RunStatus.FAILED)

    runner = CliRunner()
    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0, result.output
    assert pending.id in result.output
    assert failed.id in result.output

    result = runner.invoke(app, ["runs", "list", "--status", "failed"])
    assert result.exit_code == 0, result.output
    assert failed.id in result.output
    assert pending.id not in result.output


def test_runs_list_empty():
    _setup_repo()
    result = CliRunner().invoke(app, ["runs", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.output


def test_runs_show_details_and_missing():
    repo = _setup_repo()
    run = _store_run(repo, RunStatus.FAILED)
    asyncio.run(
        repo.append_node_record(
            NodeExecutionRecord(
                run_id=run.id, node_id="http_1", node_kind="http-request",
                status="failed", error="boom",
            )
        )
    )

    runner = CliRunner()
    result = runner.invoke(app, ["runs", "show", run.id])
    assert result.exit_code == 0, result.output
    assert f"Run {run.id}: failed" in result.output
    assert "Error: boom" in result.output
    assert "http_1 [http-request]: failed" in result.output

    result = runner.invoke(app, ["runs", "show", "missing"])
    assert result.exit_code == 1
    assert "Run not found" in result.output


def test_nodes_list_groups_by_family():
    result = CliRunner().invoke(app, ["nodes", "list"])
    assert result.exit_code == 0, result.output
    assert "trigger:" in result.output
    assert "  whatsapp-message" in result.output
    assert "  send-email" in result.output


def test_workflow_validate(tmp_path):
    good = tmp_path / "good.json"
    good.write_text(json.dumps({"graph": GRAPH}))
    bad = tmp_path / "bad.yaml"
    bad.write_text("nodes:\n  - id: a\n    type: teleport\n")

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "validate", str(good)])
    assert result.exit_code == 0, result.output
    assert "2 nodes, 1 edges" in result.output

    result = runner.invoke(app, ["workflow", "validate", str(bad)])
    assert result.exit_code == 1
    assert "unknown kind 'teleport'" in result.output

    result = runner.invoke(app, ["workflow", "validate", str(tmp_path / "nope.json")])
    assert result.exit_code == 1


def test_workflow_publish_stores_active_version(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "welcome.yaml"
    path.write_text(
        json.dumps({**GRAPH, "trigger_config": {"channels": ["whatsapp"]}})
    )

    result = CliRunner().invoke(app, ["workflow", "publish", str(path), "--tenant", "t1"])
    assert result.exit_code == 0, result.output
    assert "Triggers: whatsapp-message" in result.output

    [active] = asyncio.run(repo.list_active_workflows("t1", ["whatsapp-message"]))
    assert active.definition.name == "welcome"
    assert active.version.trigger_config == {"channels": ["whatsapp"]}


def test_trigger_emit_rejects_bad_payload():
    runner = CliRunner()
    result = runner.invoke(app, ["trigger", "emit", "manual", "--tenant", "t1", "--payload", "{"])
    assert result.exit_code == 1
    assert "Invalid JSON payload" in result.output

    result = runner.invoke(
        app, ["trigger", "emit", "manual", "--tenant", "t1", "--definition-id", "d1"]
    )
    assert result.exit_code == 0, result.output
    assert "Emitted manual as" in result.output
