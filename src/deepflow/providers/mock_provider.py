"""Deterministic mock provider for tests and dry runs.

Returns hash-based responses from prompts, so no API calls or credentials
are needed to exercise workflows end to end.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any

from .base import (
    ChunkCallback,
    GenerationRequest,
    NormalizedResult,
    Provider,
    ProviderConfig,
)

_WORDS = [
    "analysis",
    "evidence",
    "sources",
    "synthesis",
    "critique",
    "methodology",
    "findings",
    "limitations",
    "context",
    "trends",
    "assumptions",
    "implications",
    "comparison",
    "validation",
    "summary",
    "outlook",
]


class MockProvider(Provider):
    """Provider that returns deterministic responses without API calls.

    Args:
        responses: Optional lookup table mapping prompt substrings to responses.
        config: Optional provider config (defaults to zero-cost pricing).
        provider_name: Name to register under; lets one mock stand in for a
            real provider such as ``"openai"``.
        input_tokens: Fixed input token count to report (heuristic if None).
        output_tokens: Fixed output token count to report (heuristic if None).
        delay: Seconds to sleep per call, to simulate network latency.
        error: Exception raised on every call.
    """

    name = "mock"
    MODELS = ["mock-model"]

    def __init__(
        self,
        responses: dict[str, str] | None = None,
        config: ProviderConfig | None = None,
        *,
        provider_name: str = "mock",
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.name = provider_name
        super().__init__(config or ProviderConfig(name=provider_name, api_key="mock"))
        self._responses = responses or {}
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self._delay = delay
        self._error = error
        self.requests: list[GenerationRequest] = []
        self.active = 0
        self.max_active = 0

    @property
    def supports_streaming(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return True

    def respond(self, prompt: str) -> str:
        """Return the canned or hash-derived response for ``prompt``."""
        for key, value in self._responses.items():
            if key in prompt:
                return value
        return _generate_from_hash(prompt)

    async def _invoke(self, request: GenerationRequest) -> Any:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._error is not None:
                raise self._error
            return {"content": self.respond(request.prompt_text()), "model": request.model}
        finally:
            self.active -= 1

    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        return self._result(
            request,
            raw["content"],
            latency_ms,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            finish_reason="stop",
            model=raw.get("model"),
        )

    async def _stream(
        self, request: GenerationRequest, on_chunk: ChunkCallback, started: float
    ) -> NormalizedResult:
        raw = await self._invoke(request)
        for piece in _split_chunks(raw["content"]):
            await on_chunk(piece)
            await asyncio.sleep(0)
        return self.normalize(raw, request, (time.perf_counter() - started) * 1000)


def _generate_from_hash(prompt: str) -> str:
    """Generate a deterministic response seeded by the prompt hash."""
    h = hashlib.sha256(prompt.encode()).hexdigest()
    selected = [_WORDS[int(h[i : i + 2], 16) % len(_WORDS)] for i in range(0, 16, 2)]
    return (
        f"Key {selected[0]}: the {selected[1]} points to {selected[2]}.\n"
        f"Considering {selected[3]} and {selected[4]}, "
        f"the {selected[5]} suggests {selected[6]} with clear {selected[7]}."
    )


def _split_chunks(content: str, size: int = 24) -> list[str]:
    return [content[i : i + size] for i in range(0, len(content), size)] or [""]
