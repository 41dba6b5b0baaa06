"""Workflow definitions, execution records and the orchestrator."""

from .definitions import AgentStep, CostEstimate, WorkflowDefinition, load_workflow
from .events import (
    DONE_FRAME,
    ContentEvent,
    ErrorEvent,
    StatusEvent,
    StepEvent,
    StreamEvent,
    UsageEvent,
    encode_sse,
    sse_frames,
    usage_summary,
)
from .execution import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    StepResult,
    WorkflowExecution,
    can_transition,
)
from .graph import ready_steps, topological_order
from .interpolation import interpolate
from .orchestrator import WorkflowOrchestrator
from .registry import DEFAULT_WORKFLOW_ID, WorkflowRegistry
from .store import SessionStore

__all__ = [
    "DEFAULT_WORKFLOW_ID",
    "DONE_FRAME",
    "TERMINAL_STATUSES",
    "AgentStep",
    "ContentEvent",
    "CostEstimate",
    "ErrorEvent",
    "ExecutionStatus",
    "SessionStore",
    "StatusEvent",
    "StepEvent",
    "StepResult",
    "StreamEvent",
    "UsageEvent",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowOrchestrator",
    "WorkflowRegistry",
    "can_transition",
    "encode_sse",
    "interpolate",
    "load_workflow",
    "ready_steps",
    "sse_frames",
    "topological_order",
    "usage_summary",
]
