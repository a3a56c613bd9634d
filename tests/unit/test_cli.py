"""CLI tests."""

import re

import pytest
from typer.testing import CliRunner

import waypoint.persistence as persistence
from waypoint.cli import _engine, app
from waypoint.persistence import InMemoryEscalationStore, InMemoryWorkflowRepository
from waypoint.transports.redis import RedisTransport

STEPS_MODULE = '''
async def gather(inputs, ctx):
    return {"items": inputs.get("count", 0)}


async def approve(inputs, ctx):
    return {"approved": await ctx.decide("Approve the release?")}
'''

WORKFLOW = """
name: approval
steps:
  - id: gather
    action: cli_steps:gather
    inputs:
      count: 2
  - id: approve
    action: cli_steps:approve
    dependencies: [gather]
"""


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    (tmp_path / "cli_steps.py").write_text(STEPS_MODULE)
    monkeypatch.syspath_prepend(str(tmp_path))
    config = tmp_path / "waypoint.yaml"
    config.write_text(f"workspace_root: {tmp_path / 'ws'}\n")
    monkeypatch.setenv("WAYPOINT_CONFIG", str(config))
    monkeypatch.delenv("WAYPOINT_DATABASE_URL", raising=False)
    monkeypatch.delenv("WAYPOINT_TRANSPORT", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", InMemoryWorkflowRepository())
    monkeypatch.setattr(persistence, "_escalation_store_instance", InMemoryEscalationStore())
    workflow = tmp_path / "approval.yaml"
    workflow.write_text(WORKFLOW)
    return workflow


def test_run_escalate_and_respond(cli_env):
    runner = CliRunner()
    result = runner.invoke(app, ["run", str(cli_env), "--run-id", "cli-run"])
    assert result.exit_code == 0, result.stdout
    assert "awaiting_escalation" in result.stdout
    escalation_id = re.search(r"Pending escalation: (\S+)", result.stdout).group(1)

    listed = runner.invoke(app, ["escalation", "list", "--status", "pending"])
    assert escalation_id in listed.stdout
    assert "Approve the release?" in listed.stdout

    shown = runner.invoke(app, ["escalation", "show", escalation_id])
    assert "Step: approve" in shown.stdout

    responded = runner.invoke(app, ["escalation", "respond", escalation_id, "true"])
    assert responded.exit_code == 0, responded.stdout
    assert "Status: complete" in responded.stdout

    status = runner.invoke(app, ["status", "cli-run"])
    assert "Completed: gather, approve" in status.stdout

    runs = runner.invoke(app, ["runs", "--status", "complete"])
    assert "cli-run" in runs.stdout

    metrics = runner.invoke(app, ["escalation", "metrics"])
    assert "Total: 1" in metrics.stdout
    assert "approval: 1" in metrics.stdout


def test_respond_twice_and_unknown_run(cli_env):
    runner = CliRunner()
    result = runner.invoke(app, ["run", str(cli_env)])
    escalation_id = re.search(r"Pending escalation: (\S+)", result.stdout).group(1)
    runner.invoke(app, ["escalation", "respond", escalation_id, "yes"])

    again = runner.invoke(app, ["escalation", "respond", escalation_id, "no"])
    assert again.exit_code == 1
    assert "EscalationAlreadyResolvedError" in again.stdout

    missing = runner.invoke(app, ["status", "missing-run"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout


def test_cancel_parked_run(cli_env):
    runner = CliRunner()
    runner.invoke(app, ["run", str(cli_env), "--run-id", "to-cancel"])

    result = runner.invoke(app, ["cancel", "to-cancel"])

    assert result.exit_code == 0
    assert "Status: failed" in result.stdout
    assert "Cancelled by user" in result.stdout


def test_invalid_workflow_file(cli_env, tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("name: bad\nsteps:\n  - id: a\n    action: x\n    dependencies: [a]\n")
    result = CliRunner().invoke(app, ["run", str(bad)])
    assert result.exit_code == 1
    assert "WorkflowValidationError" in result.stdout


def test_cli_engine_uses_configured_transport(cli_env, tmp_path):
    (tmp_path / "waypoint.yaml").write_text(
        f"workspace_root: {tmp_path / 'ws'}\n"
        "transport:\n"
        "  backend: redis\n"
        "  redis:\n"
        "    host: signals.internal\n"
    )

    engine = _engine()

    assert isinstance(engine.transport, RedisTransport)
    assert engine.transport.host == "signals.internal"
    assert engine.escalations.transport is engine.transport
