"""Database-backed session store for workflow executions.

Executions survive process restarts between pause and resume. Status
changes are compare-and-set on the stored status, so two callers racing to
resume (or to pause and complete) the same execution cannot both win.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Collection, Generator
from contextlib import contextmanager
from datetime import UTC, datetime

from deepflow.errors import (
    ExecutionConflictError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    PersistenceError,
    ValidationError,
)
from deepflow.state.backends import DatabaseBackend, SQLiteBackend

from .execution import (
    EXTERNAL_STATUSES,
    ExecutionStatus,
    StepResult,
    WorkflowExecution,
    can_transition,
)

logger = logging.getLogger(__name__)


class SessionStore:
    """Persists :class:`WorkflowExecution` records keyed by execution id."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS workflow_executions (
            id TEXT PRIMARY KEY,
            definition_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            status TEXT NOT NULL,
            initial_input TEXT,
            current_step INTEGER NOT NULL DEFAULT 0,
            current_step_name TEXT,
            total_steps INTEGER NOT NULL DEFAULT 0,
            step_results TEXT NOT NULL DEFAULT '{}',
            total_cost REAL NOT NULL DEFAULT 0,
            final_response TEXT,
            error TEXT,
            status_reason TEXT,
            warnings TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_workflow_executions_user
        ON workflow_executions(user_id, created_at DESC);

        CREATE INDEX IF NOT EXISTS idx_workflow_executions_status
        ON workflow_executions(status);
    """

    def __init__(self, backend: DatabaseBackend | None = None, db_path: str = "deepflow-state.db"):
        self.backend = backend or SQLiteBackend(db_path=db_path)
        self.backend.executescript(self.SCHEMA)

    @contextmanager
    def _write(self, immediate: bool = False) -> Generator[None, None, None]:
        try:
            with self.backend.transaction(immediate=immediate):
                yield
        except sqlite3.Error as e:
            raise PersistenceError(f"Session store write failed: {e}") from e

    def _fetch_row(self, execution_id: str) -> dict:
        try:
            row = self.backend.fetchone(
                "SELECT * FROM workflow_executions WHERE id = ?", (execution_id,)
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Session store read failed: {e}") from e
        if row is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return row

    # =========================================================================
    # Create / read
    # =========================================================================

    def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._write():
            self.backend.execute(
                """
                INSERT INTO workflow_executions (
                    id, definition_id, user_id, status, initial_input, current_step,
                    current_step_name, total_steps, step_results, total_cost,
                    final_response, error, status_reason, warnings,
                    created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _row_params(execution),
            )
        logger.debug("Created execution %s", execution.id, extra={"execution_id": execution.id})
        return execution

    def get(self, execution_id: str) -> WorkflowExecution:
        """Load an execution.

        Raises:
            ExecutionNotFoundError: If no record exists
        """
        return _from_row(self._fetch_row(execution_id))

    def get_status(self, execution_id: str) -> ExecutionStatus:
        return ExecutionStatus(self._fetch_row(execution_id)["status"])

    def list_executions(
        self,
        user_id: str | None = None,
        statuses: Collection[ExecutionStatus] | None = None,
        limit: int = 50,
    ) -> list[WorkflowExecution]:
        query = "SELECT * FROM workflow_executions WHERE 1=1"
        params: list = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(ExecutionStatus(s).value for s in statuses)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [_from_row(row) for row in self.backend.fetchall(query, tuple(params))]

    def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        """Execution counts per status, plus ``total``."""
        query = "SELECT status, COUNT(*) AS n FROM workflow_executions"
        params: tuple = ()
        if user_id:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " GROUP BY status"
        counts = {status.value: 0 for status in ExecutionStatus}
        for row in self.backend.fetchall(query, params):
            counts[row["status"]] = row["n"]
        counts["total"] = sum(counts.values())
        return counts

    # =========================================================================
    # Mutation
    # =========================================================================

    def save_progress(self, execution: WorkflowExecution) -> None:
        """Persist step results and counters; never touches the status."""
        execution.updated_at = datetime.now(UTC)
        with self._write():
            cursor = self.backend.execute(
                """
                UPDATE workflow_executions
                SET step_results = ?, current_step = ?, current_step_name = ?,
                    total_cost = ?, warnings = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    _dump_results(execution.step_results),
                    execution.current_step,
                    execution.current_step_name,
                    execution.total_cost,
                    json.dumps(execution.warnings),
                    execution.updated_at.isoformat(),
                    execution.id,
                ),
            )
            if cursor.rowcount == 0:
                raise ExecutionNotFoundError(f"Execution not found: {execution.id}")

    def transition(
        self,
        execution_id: str,
        target: ExecutionStatus,
        expected: Collection[ExecutionStatus] | None = None,
        *,
        reason: str | None = None,
        error: dict | None = None,
        final_response: str | None = None,
        current_step_name: str | None = None,
    ) -> WorkflowExecution:
        """Move an execution to ``target`` if the state machine allows it.

        Args:
            expected: Statuses the caller believes the record is in. If the
                stored status differs, another caller got there first.
            reason: New status reason; an empty string clears the stored one.

        Raises:
            InvalidTransitionError: If ``target`` is unreachable from the stored status
            ExecutionConflictError: If the stored status is not in ``expected``
        """
        now = datetime.now(UTC)
        with self._write(immediate=True):
            current = ExecutionStatus(self._fetch_row(execution_id)["status"])
            if expected is not None and current not in expected:
                raise ExecutionConflictError(
                    f"Execution {execution_id} is {current.value}, expected "
                    f"{'/'.join(sorted(s.value for s in expected))}",
                    {"current": current.value, "requested": target.value},
                )
            if not can_transition(current, target):
                raise InvalidTransitionError(
                    f"Cannot move execution {execution_id} from {current.value} to {target.value}",
                    current=current.value,
                    requested=target.value,
                )

            assignments = ["status = ?", "updated_at = ?"]
            params: list = [target.value, now.isoformat()]
            if reason is not None:
                assignments.append("status_reason = ?")
                params.append(reason or None)
            if error is not None:
                assignments.append("error = ?")
                params.append(json.dumps(error))
            if final_response is not None:
                assignments.append("final_response = ?")
                params.append(final_response)
            if current_step_name is not None:
                assignments.append("current_step_name = ?")
                params.append(current_step_name)
            if target.is_terminal:
                assignments.append("completed_at = ?")
                params.append(now.isoformat())

            params.append(execution_id)
            self.backend.execute(
                f"UPDATE workflow_executions SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )

        logger.info(
            "Execution %s: %s -> %s",
            execution_id,
            current.value,
            target.value,
            extra={"execution_id": execution_id},
        )
        return self.get(execution_id)

    def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus | str,
        current_step_name: str | None = None,
        reason: str | None = None,
    ) -> WorkflowExecution:
        """External pause/cancel/fail request.

        Requesting the status the execution already has is a no-op.

        Raises:
            ValidationError: If ``status`` is not paused, cancelled or failed
            InvalidTransitionError: If the execution is already terminal
        """
        try:
            status = ExecutionStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
        if status not in EXTERNAL_STATUSES:
            raise ValidationError(
                f"Status must be one of {sorted(s.value for s in EXTERNAL_STATUSES)}"
            )

        execution = self.get(execution_id)
        if execution.is_terminal:
            raise InvalidTransitionError(
                f"Execution {execution_id} is already {execution.status.value}",
                current=execution.status.value,
                requested=status.value,
            )
        if execution.status == status:
            return execution

        error = None
        if status == ExecutionStatus.FAILED:
            error = {
                "kind": "EXTERNAL_FAILURE",
                "message": reason or "Marked failed by client",
                "step_id": None,
                "details": {},
            }
        return self.transition(
            execution_id,
            status,
            expected={execution.status},
            reason=reason,
            error=error,
            current_step_name=current_step_name,
        )

    # =========================================================================
    # Backup / restore
    # =========================================================================

    def snapshot(self, execution_id: str) -> dict:
        """JSON-serializable copy of an execution record."""
        data = self.get(execution_id).to_dict()
        data["snapshot_at"] = datetime.now(UTC).isoformat()
        return data

    def restore(self, snapshot: dict, overwrite: bool = False) -> WorkflowExecution:
        """Recreate an execution from :meth:`snapshot` output."""
        execution = WorkflowExecution.from_dict(snapshot)
        verb = "INSERT OR REPLACE" if overwrite else "INSERT"
        try:
            with self._write():
                self.backend.execute(
                    f"""
                    {verb} INTO workflow_executions (
                        id, definition_id, user_id, status, initial_input, current_step,
                        current_step_name, total_steps, step_results, total_cost,
                        final_response, error, status_reason, warnings,
                        created_at, updated_at, completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _row_params(execution),
                )
        except PersistenceError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise ExecutionConflictError(f"Execution {execution.id} already exists") from e
            raise
        return execution


def _dump_results(results: dict[str, StepResult]) -> str:
    return json.dumps({step_id: result.to_dict() for step_id, result in results.items()})


def _row_params(execution: WorkflowExecution) -> tuple:
    return (
        execution.id,
        execution.definition_id,
        execution.user_id,
        execution.status.value,
        execution.initial_input,
        execution.current_step,
        execution.current_step_name,
        execution.total_steps,
        _dump_results(execution.step_results),
        execution.total_cost,
        execution.final_response,
        json.dumps(execution.error) if execution.error is not None else None,
        execution.status_reason,
        json.dumps(execution.warnings),
        execution.created_at.isoformat(),
        execution.updated_at.isoformat(),
        execution.completed_at.isoformat() if execution.completed_at else None,
    )


def _from_row(row: dict) -> WorkflowExecution:
    return WorkflowExecution.from_dict(
        {
            **row,
            "step_results": json.loads(row["step_results"] or "{}"),
            "error": json.loads(row["error"]) if row["error"] else None,
            "warnings": json.loads(row["warnings"] or "[]"),
        }
    )
