"""Prompt template interpolation.

Templates reference earlier results as ``{{step_id.field}}``. A placeholder
whose step or field cannot be resolved stays in the prompt verbatim and is
reported back as an :class:`~deepflow.errors.InterpolationGap`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from deepflow.errors import InterpolationGap

STEP_ID_PATTERN = r"[A-Za-z0-9_\-]+"
STEP_ID_RE = re.compile(STEP_ID_PATTERN)
PLACEHOLDER_RE = re.compile(r"\{\{\s*(" + STEP_ID_PATTERN + r")\.(\w+)\s*\}\}")

# Pseudo step exposing the execution's initial input
USER_INPUT_STEP = "user_input"


def build_context(initial_input: str, results: Mapping[str, Any]) -> dict[str, dict]:
    """Interpolation context: the initial input plus each step's result dict."""
    context: dict[str, dict] = {USER_INPUT_STEP: {"content": initial_input}}
    for step_id, result in results.items():
        context[step_id] = result.to_dict() if hasattr(result, "to_dict") else dict(result)
    return context


def interpolate(
    template: str, context: Mapping[str, Mapping[str, Any]]
) -> tuple[str, list[InterpolationGap]]:
    """Substitute placeholders from ``context``.

    Missing steps, missing fields and falsy values (empty text, 0, False)
    leave the placeholder in place.

    Returns:
        The rendered text and one gap per unresolved placeholder
    """
    gaps: list[InterpolationGap] = []

    def _replace(match: re.Match) -> str:
        step_id, field_name = match.group(1), match.group(2)
        value = (context.get(step_id) or {}).get(field_name)
        if not value:
            gaps.append(InterpolationGap(match.group(0), step_id=step_id))
            return match.group(0)
        return str(value)

    return PLACEHOLDER_RE.sub(_replace, template), gaps


def referenced_steps(template: str) -> set[str]:
    return {match.group(1) for match in PLACEHOLDER_RE.finditer(template)}
