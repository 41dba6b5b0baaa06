"""Tests for the session store and the execution state machine."""

import pytest

from deepflow.errors import (
    ExecutionConflictError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from deepflow.state import SQLiteBackend
from deepflow.workflow import (
    ExecutionStatus,
    SessionStore,
    StepResult,
    WorkflowExecution,
    can_transition,
)

RUNNING = ExecutionStatus.RUNNING
PAUSED = ExecutionStatus.PAUSED
PENDING = ExecutionStatus.PENDING


def _execution(execution_id="exec-1", **kwargs):
    return WorkflowExecution(
        id=execution_id,
        definition_id="linear",
        user_id="u1",
        total_steps=3,
        initial_input="What is fusion?",
        **kwargs,
    )


def _result(step_id, cost=0.01):
    return StepResult(
        step_id=step_id,
        content=f"{step_id} output",
        input_tokens=10,
        output_tokens=20,
        input_cost=cost / 2,
        output_cost=cost / 2,
        total_cost=cost,
        latency_ms=12.5,
        finish_reason="stop",
        provider="openai",
        model="gpt-4o",
    )


class TestStateMachine:
    """Tests for allowed status transitions."""

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "running"),
            ("pending", "paused"),
            ("running", "completed"),
            ("running", "failed"),
            ("running", "paused"),
            ("running", "cancelled"),
            ("paused", "running"),
            ("paused", "cancelled"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(ExecutionStatus(current), ExecutionStatus(target))

    @pytest.mark.parametrize("terminal", ["completed", "failed", "cancelled"])
    def test_terminal_states_are_final(self, terminal):
        for target in ExecutionStatus:
            assert not can_transition(ExecutionStatus(terminal), target)

    def test_paused_cannot_complete(self):
        assert not can_transition(PAUSED, ExecutionStatus.COMPLETED)


class TestSessionStore:
    """Tests for create/read/update of execution records."""

    def test_create_and_get(self, store):
        store.create(_execution())
        loaded = store.get("exec-1")
        assert loaded.status == PENDING
        assert loaded.initial_input == "What is fusion?"
        assert loaded.progress == 0.0

    def test_get_missing(self, store):
        with pytest.raises(ExecutionNotFoundError):
            store.get("nope")

    def test_save_progress_keeps_status(self, store):
        execution = store.create(_execution())
        store.transition("exec-1", RUNNING, {PENDING})
        execution.record_step(_result("research"))
        execution.status = ExecutionStatus.COMPLETED  # ignored by save_progress
        store.save_progress(execution)

        loaded = store.get("exec-1")
        assert loaded.status == RUNNING
        assert loaded.current_step == 1
        assert loaded.total_cost == pytest.approx(0.01)
        assert loaded.step_results["research"].content == "research output"
        assert loaded.progress == pytest.approx(100 / 3)

    def test_results_survive_reopen(self, tmp_path):
        path = str(tmp_path / "sessions.db")
        store = SessionStore(backend=SQLiteBackend(db_path=path))
        execution = store.create(_execution())
        execution.record_step(_result("research"))
        store.save_progress(execution)
        store.transition("exec-1", PAUSED, reason="Daily limit")

        reopened = SessionStore(backend=SQLiteBackend(db_path=path)).get("exec-1")
        assert reopened.status == PAUSED
        assert reopened.status_reason == "Daily limit"
        assert list(reopened.step_results) == ["research"]

    def test_record_step_rejects_duplicates(self):
        execution = _execution()
        execution.record_step(_result("research"))
        with pytest.raises(ValueError):
            execution.record_step(_result("research"))

    def test_transition_sets_completed_at(self, store):
        store.create(_execution())
        store.transition("exec-1", RUNNING)
        done = store.transition("exec-1", ExecutionStatus.COMPLETED, final_response="All done")
        assert done.completed_at is not None
        assert done.final_response == "All done"
        assert done.is_terminal

    def test_invalid_transition(self, store):
        store.create(_execution())
        with pytest.raises(InvalidTransitionError) as exc_info:
            store.transition("exec-1", ExecutionStatus.COMPLETED)
        assert exc_info.value.current == "pending"
        assert exc_info.value.requested == "completed"

    def test_compare_and_set_conflict(self, store):
        """Only one of two callers expecting 'paused' wins the resume."""
        store.create(_execution())
        store.transition("exec-1", PAUSED)
        store.transition("exec-1", RUNNING, {PENDING, PAUSED})
        with pytest.raises(ExecutionConflictError):
            store.transition("exec-1", RUNNING, {PENDING, PAUSED})

    def test_empty_reason_clears(self, store):
        store.create(_execution())
        store.transition("exec-1", PAUSED, reason="Daily limit")
        resumed = store.transition("exec-1", RUNNING, reason="")
        assert resumed.status_reason is None

    def test_error_payload_round_trip(self, store):
        store.create(_execution())
        store.transition("exec-1", RUNNING)
        error = {"kind": "PROVIDER_ERROR", "message": "boom", "step_id": "research", "details": {}}
        failed = store.transition("exec-1", ExecutionStatus.FAILED, error=error)
        assert failed.error == error


class TestExternalStatusUpdate:
    """Tests for client-requested pause/cancel/fail."""

    def test_pause_running(self, store):
        store.create(_execution())
        store.transition("exec-1", RUNNING)
        paused = store.update_status("exec-1", "paused", current_step_name="Analysis")
        assert paused.status == PAUSED
        assert paused.current_step_name == "Analysis"

    def test_same_status_is_noop(self, store):
        store.create(_execution())
        store.transition("exec-1", PAUSED)
        before = store.get("exec-1")
        after = store.update_status("exec-1", PAUSED)
        assert after.status == PAUSED
        assert after.updated_at == before.updated_at

    def test_external_failure_records_kind(self, store):
        store.create(_execution())
        failed = store.update_status("exec-1", "failed", reason="operator abort")
        assert failed.error["kind"] == "EXTERNAL_FAILURE"
        assert failed.error["message"] == "operator abort"

    @pytest.mark.parametrize("status", ["running", "completed", "pending", "bogus"])
    def test_rejects_non_external_status(self, store, status):
        store.create(_execution())
        with pytest.raises(ValidationError):
            store.update_status("exec-1", status)

    def test_terminal_execution_rejected(self, store):
        store.create(_execution())
        store.update_status("exec-1", "cancelled")
        with pytest.raises(InvalidTransitionError):
            store.update_status("exec-1", "paused")


class TestQueries:
    """Tests for listing, counting and snapshots."""

    def test_list_and_count(self, store):
        store.create(_execution("a"))
        store.create(_execution("b"))
        other = _execution("c")
        other.user_id = "u2"
        store.create(other)
        store.transition("b", PAUSED)

        assert {e.id for e in store.list_executions(user_id="u1")} == {"a", "b"}
        assert [e.id for e in store.list_executions(statuses=[PAUSED])] == ["b"]

        counts = store.count_by_status("u1")
        assert counts["pending"] == 1
        assert counts["paused"] == 1
        assert counts["completed"] == 0
        assert counts["total"] == 2
        assert store.count_by_status()["total"] == 3

    def test_snapshot_restore(self, store):
        execution = store.create(_execution())
        execution.record_step(_result("research"))
        store.save_progress(execution)
        snapshot = store.snapshot("exec-1")
        assert "snapshot_at" in snapshot

        with pytest.raises(ExecutionConflictError):
            store.restore(snapshot)

        fresh = SessionStore(backend=SQLiteBackend(db_path=":memory:"))
        restored = fresh.restore(snapshot)
        assert restored.step_results["research"].total_tokens == 30
        assert fresh.get("exec-1").total_cost == pytest.approx(0.01)

    def test_restore_overwrite(self, store):
        store.create(_execution())
        snapshot = store.snapshot("exec-1")
        snapshot["status"] = "paused"
        assert store.restore(snapshot, overwrite=True).status == PAUSED
        assert store.get_status("exec-1") == PAUSED
