"""Typed stream events and their server-sent-event encoding."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import ClassVar

from .execution import StepResult

DONE = "[DONE]"
DONE_FRAME = f"data: {DONE}\n\n"


@dataclass(frozen=True)
class StreamEvent:
    """Base class for events pushed to stream observers."""

    type: ClassVar[str] = ""

    def to_frame(self) -> dict:
        raise NotImplementedError


@dataclass(frozen=True)
class ContentEvent(StreamEvent):
    """A piece of generated text."""

    type: ClassVar[str] = "content"
    content: str
    step_id: str | None = None

    def to_frame(self) -> dict:
        frame = {"type": self.type, "content": self.content}
        if self.step_id:
            frame["step_id"] = self.step_id
        return frame


@dataclass(frozen=True)
class StepEvent(StreamEvent):
    """A step was dispatched or finished."""

    type: ClassVar[str] = "step"
    name: str
    number: int
    step_id: str
    status: str = "running"

    def to_frame(self) -> dict:
        return {
            "type": self.type,
            "step": {
                "name": self.name,
                "number": self.number,
                "id": self.step_id,
                "status": self.status,
            },
        }


@dataclass(frozen=True)
class UsageEvent(StreamEvent):
    type: ClassVar[str] = "usage"
    usage: dict = field(default_factory=dict)

    def to_frame(self) -> dict:
        return {"type": self.type, "usage": self.usage}


@dataclass(frozen=True)
class StatusEvent(StreamEvent):
    """The execution changed status (paused, completed, cancelled, ...)."""

    type: ClassVar[str] = "status"
    status: str
    reason: str | None = None

    def to_frame(self) -> dict:
        return {"type": self.type, "status": self.status, "reason": self.reason}


@dataclass(frozen=True)
class ErrorEvent(StreamEvent):
    type: ClassVar[str] = "error"
    kind: str
    message: str
    step_id: str | None = None

    def to_frame(self) -> dict:
        return {
            "type": self.type,
            "error": {"kind": self.kind, "message": self.message, "step_id": self.step_id},
        }


def encode_sse(event: StreamEvent | str) -> str:
    """Encode one event (or the ``[DONE]`` sentinel) as an SSE frame."""
    if event == DONE:
        return DONE_FRAME
    return f"data: {json.dumps(event.to_frame())}\n\n"


async def sse_frames(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Encode an event stream, terminated by the ``[DONE]`` frame."""
    async with aclosing(events):
        async for event in events:
            yield encode_sse(event)
    yield DONE_FRAME


def usage_summary(results: Iterable[StepResult]) -> dict:
    """Aggregate token, cost and latency usage across step results."""
    total_input = total_output = 0
    total_cost = 0.0
    latencies: list[float] = []
    by_provider: dict[str, dict] = {}
    by_model: dict[str, dict] = {}

    for result in results:
        total_input += result.input_tokens
        total_output += result.output_tokens
        total_cost += result.total_cost
        latencies.append(result.latency_ms)
        for bucket, key in ((by_provider, result.provider), (by_model, result.model)):
            entry = bucket.setdefault(key or "unknown", {"requests": 0, "tokens": 0, "cost": 0.0})
            entry["requests"] += 1
            entry["tokens"] += result.total_tokens
            entry["cost"] += result.total_cost

    return {
        "input_tokens": total_input,
        "output_tokens": total_output,
        "total_tokens": total_input + total_output,
        "total_cost": total_cost,
        "requests": len(latencies),
        "average_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
        "provider_breakdown": by_provider,
        "model_breakdown": by_model,
    }
