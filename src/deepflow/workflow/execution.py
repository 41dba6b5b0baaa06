"""Execution records, step results and the execution state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from deepflow.providers.base import NormalizedResult


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# paused -> running is the only way back into the loop
TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
            ExecutionStatus.CANCELLED,
            ExecutionStatus.FAILED,
        }
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.PAUSED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

# Statuses a client may request through the external status update
EXTERNAL_STATUSES = frozenset(
    {ExecutionStatus.PAUSED, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
)


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in TRANSITIONS[current]


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class StepResult:
    """Recorded outcome of one step. Immutable once written."""

    step_id: str
    content: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float
    latency_ms: float
    finish_reason: str
    provider: str = ""
    model: str = ""
    timestamp: datetime = field(default_factory=_now)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_normalized(cls, step_id: str, result: NormalizedResult) -> StepResult:
        cost = result.cost
        return cls(
            step_id=step_id,
            content=result.content,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            input_cost=cost.input_cost if cost else 0.0,
            output_cost=cost.output_cost if cost else 0.0,
            total_cost=cost.total_cost if cost else 0.0,
            latency_ms=result.latency_ms,
            finish_reason=result.finish_reason,
            provider=result.provider,
            model=result.model,
        )

    def to_dict(self) -> dict:
        """Flat dict; every key is addressable as ``{{step_id.key}}``."""
        return {
            "step_id": self.step_id,
            "content": self.content,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "input_cost": self.input_cost,
            "output_cost": self.output_cost,
            "total_cost": self.total_cost,
            "latency_ms": self.latency_ms,
            "finish_reason": self.finish_reason,
            "provider": self.provider,
            "model": self.model,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> StepResult:
        return cls(
            step_id=data["step_id"],
            content=data.get("content", ""),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            input_cost=float(data.get("input_cost", 0.0)),
            output_cost=float(data.get("output_cost", 0.0)),
            total_cost=float(data.get("total_cost", 0.0)),
            latency_ms=float(data.get("latency_ms", 0.0)),
            finish_reason=data.get("finish_reason", "unknown"),
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            timestamp=_parse_dt(data.get("timestamp")) or _now(),
        )


@dataclass
class WorkflowExecution:
    """A resumable run of one workflow for one user (a session)."""

    id: str
    definition_id: str
    user_id: str
    total_steps: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    initial_input: str = ""
    current_step: int = 0
    current_step_name: str | None = None
    step_results: dict[str, StepResult] = field(default_factory=dict)
    total_cost: float = 0.0
    final_response: str | None = None
    error: dict | None = None
    status_reason: str | None = None
    warnings: list[dict] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def progress(self) -> float:
        """Percentage of steps with a recorded result."""
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps * 100

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def record_step(self, result: StepResult) -> None:
        if result.step_id in self.step_results:
            raise ValueError(f"Step '{result.step_id}' already has a recorded result")
        self.step_results[result.step_id] = result
        self.current_step = len(self.step_results)
        self.total_cost += result.total_cost
        self.updated_at = _now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "initial_input": self.initial_input,
            "current_step": self.current_step,
            "current_step_name": self.current_step_name,
            "total_steps": self.total_steps,
            "progress": self.progress,
            "step_results": {k: v.to_dict() for k, v in self.step_results.items()},
            "total_cost": self.total_cost,
            "final_response": self.final_response,
            "error": self.error,
            "status_reason": self.status_reason,
            "warnings": list(self.warnings),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowExecution:
        return cls(
            id=data["id"],
            definition_id=data["definition_id"],
            user_id=data["user_id"],
            total_steps=int(data.get("total_steps", 0)),
            status=ExecutionStatus(data.get("status", "pending")),
            initial_input=data.get("initial_input", ""),
            current_step=int(data.get("current_step", 0)),
            current_step_name=data.get("current_step_name"),
            step_results={
                k: StepResult.from_dict(v) for k, v in (data.get("step_results") or {}).items()
            },
            total_cost=float(data.get("total_cost", 0.0)),
            final_response=data.get("final_response"),
            error=data.get("error"),
            status_reason=data.get("status_reason"),
            warnings=list(data.get("warnings") or []),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
            completed_at=_parse_dt(data.get("completed_at")),
        )
