"""Mistral provider implementation (OpenAI-compatible chat REST API)."""

from __future__ import annotations

from typing import Any

from .base import GenerationRequest, NormalizedResult
from .http_provider import HTTPProvider


class MistralProvider(HTTPProvider):
    """Mistral AI provider."""

    name = "mistral"
    DEFAULT_BASE_URL = "https://api.mistral.ai/v1"

    MODELS = [
        "mistral-large-latest",
        "mistral-medium-latest",
        "mistral-small-latest",
    ]

    CAPABILITIES = {
        "mistral-large-latest": frozenset({"function_calling", "json_mode"}),
        "mistral-small-latest": frozenset({"function_calling", "json_mode"}),
    }

    def _build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        messages = request.to_messages()
        system = request.system_text()
        if system:
            messages.insert(0, {"role": "system", "content": system})
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def _invoke(self, request: GenerationRequest) -> Any:
        return await self._post_json("/chat/completions", self._build_payload(request), request)

    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        choice = raw["choices"][0]
        usage = raw.get("usage") or {}
        return self._result(
            request,
            (choice.get("message") or {}).get("content"),
            latency_ms,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            finish_reason=choice.get("finish_reason") or "completed",
            model=raw.get("model"),
        )
