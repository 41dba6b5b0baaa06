"""Workflow definitions: immutable step templates loaded from YAML or dicts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from deepflow.errors import WorkflowValidationError

from .graph import validate_no_cycles
from .interpolation import STEP_ID_RE, USER_INPUT_STEP

logger = logging.getLogger(__name__)

# Open set; unknown roles are accepted
KNOWN_ROLES = frozenset({"researcher", "analyzer", "synthesizer", "critic", "writer"})


@dataclass(frozen=True)
class CostEstimate:
    """Expected token range and cost for one step."""

    min_tokens: int = 0
    max_tokens: int | None = None
    estimated_cost: float | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> CostEstimate:
        data = data or {}
        return cls(
            min_tokens=int(data.get("min_tokens", 0)),
            max_tokens=int(data["max_tokens"]) if data.get("max_tokens") is not None else None,
            estimated_cost=(
                float(data["estimated_cost"]) if data.get("estimated_cost") is not None else None
            ),
        )

    def to_dict(self) -> dict:
        return {
            "min_tokens": self.min_tokens,
            "max_tokens": self.max_tokens,
            "estimated_cost": self.estimated_cost,
        }


@dataclass(frozen=True)
class AgentStep:
    """One model invocation within a workflow."""

    id: str
    agent_role: str
    model: str
    prompt_template: str
    name: str = ""
    provider: str | None = None
    depends_on: tuple[str, ...] = ()
    parallel: bool = False
    cost_estimate: CostEstimate = field(default_factory=CostEstimate)
    system_prompt: str | None = None
    temperature: float = 0.7

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @classmethod
    def from_dict(cls, data: dict) -> AgentStep:
        missing = [k for k in ("id", "model", "prompt_template") if not data.get(k)]
        if missing:
            raise WorkflowValidationError(
                f"Step is missing required fields: {', '.join(missing)}", step_id=data.get("id")
            )
        depends_on = data.get("depends_on") or ()
        if isinstance(depends_on, str):
            depends_on = (depends_on,)
        return cls(
            id=str(data["id"]),
            agent_role=str(data.get("agent_role") or data.get("role") or "researcher"),
            model=str(data["model"]),
            prompt_template=str(data["prompt_template"]),
            name=str(data.get("name", "")),
            provider=data.get("provider"),
            depends_on=tuple(str(d) for d in depends_on),
            parallel=bool(data.get("parallel", False)),
            cost_estimate=CostEstimate.from_dict(data.get("cost_estimate")),
            system_prompt=data.get("system_prompt"),
            temperature=float(data.get("temperature", 0.7)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "agent_role": self.agent_role,
            "provider": self.provider,
            "model": self.model,
            "prompt_template": self.prompt_template,
            "depends_on": list(self.depends_on),
            "parallel": self.parallel,
            "cost_estimate": self.cost_estimate.to_dict(),
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable workflow template, validated on construction.

    Step ids are unique, ``depends_on`` only names earlier steps, and the
    dependency graph is acyclic.
    """

    id: str
    steps: tuple[AgentStep, ...]
    name: str = ""
    description: str = ""
    version: str = "1.0"
    estimated_duration_minutes: float | None = None
    estimated_cost_range: tuple[float, float] | None = None
    tags: tuple[str, ...] = ()
    required_capabilities: tuple[str, ...] = ()

    def __post_init__(self):
        _validate_steps(self.id, self.steps)

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def get_step(self, step_id: str) -> AgentStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def cost_range(self) -> tuple[float, float]:
        """Declared cost range, or the sum of step estimates."""
        if self.estimated_cost_range:
            return self.estimated_cost_range
        total = sum(step.cost_estimate.estimated_cost or 0.0 for step in self.steps)
        return (0.0, total)

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowDefinition:
        if not data.get("id"):
            raise WorkflowValidationError("Workflow is missing an id")
        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list) or not steps_data:
            raise WorkflowValidationError("Workflow must define at least one step", data["id"])
        metadata = data.get("metadata") or {}
        cost_range = data.get("estimated_cost_range") or metadata.get("estimated_cost_range")
        if isinstance(cost_range, dict):
            cost_range = (cost_range.get("min", 0.0), cost_range.get("max", 0.0))
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            version=str(data.get("version", "1.0")),
            steps=tuple(AgentStep.from_dict(s) for s in steps_data),
            estimated_duration_minutes=data.get("estimated_duration_minutes")
            or metadata.get("estimated_duration_minutes"),
            estimated_cost_range=tuple(float(v) for v in cost_range) if cost_range else None,
            tags=tuple(data.get("tags") or metadata.get("tags") or ()),
            required_capabilities=tuple(
                data.get("required_capabilities") or metadata.get("required_capabilities") or ()
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "steps": [step.to_dict() for step in self.steps],
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "estimated_cost_range": list(self.cost_range),
            "tags": list(self.tags),
            "required_capabilities": list(self.required_capabilities),
        }


def _validate_steps(workflow_id: str, steps: tuple[AgentStep, ...]) -> None:
    if not steps:
        raise WorkflowValidationError("Workflow must define at least one step", workflow_id)

    seen: set[str] = set()
    all_ids = {step.id for step in steps}
    for step in steps:
        if not STEP_ID_RE.fullmatch(step.id):
            raise WorkflowValidationError(
                f"Step id '{step.id}' may only contain letters, digits, '_' and '-'",
                workflow_id,
                step_id=step.id,
            )
        if step.id == USER_INPUT_STEP:
            raise WorkflowValidationError(
                f"Step id '{USER_INPUT_STEP}' is reserved for the initial input",
                workflow_id,
                step_id=step.id,
            )
        if step.id in seen:
            raise WorkflowValidationError(
                f"Duplicate step id '{step.id}'", workflow_id, step_id=step.id
            )
        for dep in step.depends_on:
            if dep not in all_ids:
                raise WorkflowValidationError(
                    f"Step '{step.id}' depends on unknown step '{dep}'", workflow_id, step.id
                )
            if dep not in seen:
                raise WorkflowValidationError(
                    f"Step '{step.id}' depends on '{dep}', which is not defined before it",
                    workflow_id,
                    step.id,
                )
        if step.agent_role not in KNOWN_ROLES:
            logger.debug("Step %s uses custom agent role %s", step.id, step.agent_role)
        seen.add(step.id)

    try:
        validate_no_cycles(steps)
    except WorkflowValidationError as e:
        raise WorkflowValidationError(e.message, workflow_id) from e


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        WorkflowValidationError: If the YAML is invalid or the workflow malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {path}")

    with open(path) as f:
        try:
            data: Any = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise WorkflowValidationError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise WorkflowValidationError(f"Workflow file must contain a YAML mapping: {path}")

    return WorkflowDefinition.from_dict(data)
