"""Step dependency analysis.

Builds the dependency graph of a workflow, rejects cycles, and answers which
steps are ready to run given the results recorded so far.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from deepflow.errors import WorkflowValidationError

if TYPE_CHECKING:
    from .definitions import AgentStep

logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    """Graph representation of step dependencies.

    Attributes:
        nodes: Step IDs in definition order
        edges: Dict mapping step_id -> set of step_ids it depends on
        reverse_edges: Dict mapping step_id -> set of step_ids that depend on it
    """

    nodes: list[str] = field(default_factory=list)
    edges: dict[str, set[str]] = field(default_factory=dict)
    reverse_edges: dict[str, set[str]] = field(default_factory=dict)

    def add_node(self, step_id: str) -> None:
        if step_id not in self.edges:
            self.nodes.append(step_id)
            self.edges[step_id] = set()
            self.reverse_edges[step_id] = set()

    def add_edge(self, from_id: str, to_id: str) -> None:
        """Add a dependency edge (from_id depends on to_id)."""
        self.add_node(from_id)
        self.add_node(to_id)
        self.edges[from_id].add(to_id)
        self.reverse_edges[to_id].add(from_id)

    def get_dependencies(self, step_id: str) -> set[str]:
        return self.edges.get(step_id, set())

    def get_dependents(self, step_id: str) -> set[str]:
        return self.reverse_edges.get(step_id, set())

    def get_roots(self) -> list[str]:
        return [node for node in self.nodes if not self.edges[node]]


def build_dependency_graph(steps: Sequence[AgentStep]) -> DependencyGraph:
    graph = DependencyGraph()
    for step in steps:
        graph.add_node(step.id)
    for step in steps:
        for dep_id in step.depends_on:
            graph.add_edge(step.id, dep_id)
    return graph


def execution_levels(graph: DependencyGraph) -> list[list[str]]:
    """Group steps into levels; a level only depends on earlier levels.

    Raises:
        WorkflowValidationError: If the graph contains a cycle
    """
    levels: list[list[str]] = []
    completed: set[str] = set()
    remaining = list(graph.nodes)

    while remaining:
        ready = [s for s in remaining if graph.get_dependencies(s) <= completed]
        if not ready:
            raise WorkflowValidationError(
                f"Circular dependency detected. Remaining steps: {sorted(remaining)}"
            )
        levels.append(ready)
        completed.update(ready)
        remaining = [s for s in remaining if s not in completed]

    return levels


def validate_no_cycles(steps: Sequence[AgentStep]) -> None:
    execution_levels(build_dependency_graph(steps))


def topological_order(steps: Sequence[AgentStep]) -> list[str]:
    """Step IDs in an order that respects every dependency edge."""
    levels = execution_levels(build_dependency_graph(steps))
    return [step_id for level in levels for step_id in level]


def ready_steps(steps: Sequence[AgentStep], completed: Collection[str]) -> list[AgentStep]:
    """Steps not yet completed whose dependencies all have results.

    Returned in definition order.
    """
    done = set(completed)
    return [
        step
        for step in steps
        if step.id not in done and all(dep in done for dep in step.depends_on)
    ]


def next_wave(ready: Sequence[AgentStep], max_parallel: int | None = None) -> list[AgentStep]:
    """Pick the steps to dispatch together from the ready set.

    The first ready step always runs. If it is marked ``parallel``, every
    other ready ``parallel`` step joins it (up to ``max_parallel``); steps
    without the flag run alone, in definition order.
    """
    if not ready:
        return []
    first = ready[0]
    if not first.parallel:
        return [first]
    wave = [step for step in ready if step.parallel]
    if max_parallel:
        wave = wave[:max_parallel]
    return wave
