"""Tests for the deepflow CLI."""

import json
import logging

import pytest
from typer.testing import CliRunner

from deepflow import __version__
from deepflow.cli.main import app
from deepflow.workflow import ExecutionStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch, orchestrator):
    """Point every command at the in-memory orchestrator with mock providers."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DEEPFLOW_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("DEEPFLOW_DATABASE_URL", f"sqlite:///{tmp_path}/cli.db")
    monkeypatch.setattr("deepflow.cli.commands.workflow.get_orchestrator", lambda: orchestrator)
    monkeypatch.setattr("deepflow.cli.commands.usage.get_orchestrator", lambda: orchestrator)

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def invoke(*args):
    return runner.invoke(app, list(args))


class TestMain:
    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = invoke("--help")
        assert result.exit_code == 0
        for command in ("run", "resume", "status", "workflows", "usage"):
            assert command in result.output


class TestWorkflowCommands:
    """Running and controlling executions from the command line."""

    def test_workflows_list(self):
        result = invoke("workflows", "list", "--json")
        assert result.exit_code == 0
        assert [d["id"] for d in json.loads(result.output)] == ["linear"]

    def test_workflows_show(self):
        result = invoke("workflows", "show", "linear")
        assert result.exit_code == 0
        assert "Research" in result.output
        assert "gemini-1.5-pro" in result.output

    def test_workflows_show_unknown(self):
        result = invoke("workflows", "show", "missing")
        assert result.exit_code == 1
        assert "WORKFLOW_NOT_FOUND" in result.output

    def test_workflows_preview(self):
        result = invoke("workflows", "preview", "linear", "--user", "u1", "--json")
        assert result.exit_code == 0
        prediction = json.loads(result.output)
        assert prediction["estimated_cost"] == pytest.approx(0.03)
        assert prediction["will_exceed_daily"] is False

    def test_run(self, orchestrator):
        result = invoke("run", "fusion energy", "--workflow", "linear", "--user", "u1")
        assert result.exit_code == 0, result.output
        assert "Step 1:" in result.output
        assert "Status: completed" in result.output

        [execution] = orchestrator.list_executions("u1")
        assert execution.status == ExecutionStatus.COMPLETED

    def test_run_sse(self):
        result = invoke("run", "fusion energy", "--workflow", "linear", "--sse")
        assert result.exit_code == 0
        assert result.output.startswith('data: {"type": "status", "status": "running"')
        assert result.output.endswith("data: [DONE]\n\n")

    def test_run_unknown_workflow(self):
        result = invoke("run", "q", "--workflow", "missing")
        assert result.exit_code == 1
        assert "WORKFLOW_NOT_FOUND" in result.output

    def test_status_json(self, orchestrator):
        execution = orchestrator.start("linear", "u1", "q")
        result = invoke("status", execution.id, "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["id"] == execution.id
        assert data["status"] == "pending"
        assert data["total_steps"] == 3

    def test_status_panel(self, orchestrator):
        execution = orchestrator.start("linear", "u1", "q")
        result = invoke("status", execution.id)
        assert result.exit_code == 0
        assert "pending" in result.output
        assert "0/3" in result.output

    def test_status_unknown(self):
        result = invoke("status", "nope")
        assert result.exit_code == 1
        assert "EXECUTION_NOT_FOUND" in result.output

    def test_pause_then_resume(self, orchestrator):
        execution = orchestrator.start("linear", "u1", "q")

        result = invoke("pause", execution.id, "--step-name", "Research")
        assert result.exit_code == 0
        assert "paused" in result.output
        paused = orchestrator.get_status(execution.id)
        assert paused.status == ExecutionStatus.PAUSED
        assert paused.current_step_name == "Research"

        result = invoke("resume", execution.id)
        assert result.exit_code == 0, result.output
        assert orchestrator.get_status(execution.id).status == ExecutionStatus.COMPLETED

    def test_resume_requires_paused(self, orchestrator):
        execution = orchestrator.start("linear", "u1", "q")
        result = invoke("resume", execution.id)
        assert result.exit_code == 1
        assert "only paused executions" in result.output

    def test_cancel_is_final(self, orchestrator):
        execution = orchestrator.start("linear", "u1", "q")
        assert invoke("cancel", execution.id).exit_code == 0
        assert orchestrator.get_status(execution.id).status == ExecutionStatus.CANCELLED

        result = invoke("cancel", execution.id)
        assert result.exit_code == 1
        assert "INVALID_TRANSITION" in result.output

    def test_executions(self, orchestrator):
        orchestrator.start("linear", "u1", "q1")
        orchestrator.start("linear", "u2", "q2")

        result = invoke("executions", "--user", "u1", "--json")
        assert result.exit_code == 0
        assert [e["user_id"] for e in json.loads(result.output)] == ["u1"]

        result = invoke("executions", "--status", "completed", "--json")
        assert json.loads(result.output) == []

    def test_executions_bad_status(self):
        result = invoke("executions", "--status", "sleeping")
        assert result.exit_code == 1
        assert "Unknown status" in result.output


class TestUsageCommands:
    """Spend stats and limit management."""

    def test_limits_default(self):
        result = invoke("usage", "limits", "--user", "u1", "--json")
        assert result.exit_code == 0
        limits = json.loads(result.output)
        assert limits["daily_limit_usd"] == 10.0
        assert limits["hard_stop_enabled"] is True

    def test_limits_update(self, guard):
        result = invoke(
            "usage", "limits", "--user", "u1", "--daily", "2.5", "--no-auto-pause", "--json"
        )
        assert result.exit_code == 0
        assert json.loads(result.output)["daily_limit_usd"] == 2.5
        limits = guard.get_limits("u1")
        assert limits.daily_limit_usd == 2.5
        assert limits.auto_pause_workflows is False

    def test_limits_invalid(self):
        result = invoke("usage", "limits", "--threshold", "2")
        assert result.exit_code == 1
        assert "Invalid limits" in result.output

    def test_show_after_run(self):
        invoke("run", "q", "--workflow", "linear", "--user", "u1")
        result = invoke("usage", "show", "--user", "u1", "--json")
        assert result.exit_code == 0
        stats = json.loads(result.output)
        assert stats["today"]["requests"] == 3
        assert stats["status"] == "safe"

    def test_breakdown_empty(self):
        result = invoke("usage", "breakdown", "--user", "nobody")
        assert result.exit_code == 0
        assert "No usage recorded" in result.output

    def test_breakdown_json(self):
        invoke("run", "q", "--workflow", "linear", "--user", "u1")
        result = invoke("usage", "breakdown", "--user", "u1", "--days", "7", "--json")
        assert result.exit_code == 0
        breakdown = json.loads(result.output)
        assert set(breakdown["providers"]) == {"google", "anthropic", "openai"}
        assert breakdown["daily"][0]["requests"] == 3
