"""Registry of workflow definitions, looked up by id."""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path

from deepflow.errors import WorkflowNotFoundError

from .definitions import WorkflowDefinition, load_workflow
from .interpolation import USER_INPUT_STEP, referenced_steps

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_ID = "deep-research-default"
_BUILTIN_PACKAGE = "deepflow.workflows"


class WorkflowRegistry:
    """Holds validated, read-only workflow definitions."""

    def __init__(self, definitions: list[WorkflowDefinition] | None = None):
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    @classmethod
    def with_builtins(cls, extra_dir: str | Path | None = None) -> WorkflowRegistry:
        """Registry preloaded with the packaged workflows (and ``extra_dir``)."""
        registry = cls()
        for entry in resources.files(_BUILTIN_PACKAGE).iterdir():
            if entry.name.endswith((".yaml", ".yml")):
                with resources.as_file(entry) as path:
                    registry.load_file(path)
        if extra_dir:
            registry.load_directory(extra_dir)
        return registry

    def register(
        self, definition: WorkflowDefinition | dict, replace: bool = False
    ) -> WorkflowDefinition:
        """Register a definition; dicts are parsed and validated first.

        Raises:
            WorkflowValidationError: If the definition is malformed
            ValueError: If the id is taken and ``replace`` is False
        """
        if isinstance(definition, dict):
            definition = WorkflowDefinition.from_dict(definition)
        if definition.id in self._definitions and not replace:
            raise ValueError(f"Workflow already registered: {definition.id}")

        known = set(definition.step_ids) | {USER_INPUT_STEP}
        for step in definition.steps:
            unknown = referenced_steps(step.prompt_template) - known
            if unknown:
                logger.warning(
                    "Workflow %s step %s references unknown steps %s",
                    definition.id,
                    step.id,
                    sorted(unknown),
                )

        self._definitions[definition.id] = definition
        logger.debug("Registered workflow %s", definition.id)
        return definition

    def get(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._definitions[workflow_id]
        except KeyError:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}") from None

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._definitions

    def list_workflows(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def load_file(self, path: str | Path, replace: bool = False) -> WorkflowDefinition:
        return self.register(load_workflow(path), replace=replace)

    def load_directory(self, directory: str | Path) -> list[WorkflowDefinition]:
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("Workflow directory does not exist: %s", directory)
            return []
        loaded = []
        for path in sorted(directory.glob("*.y*ml")):
            loaded.append(self.load_file(path, replace=True))
        return loaded
