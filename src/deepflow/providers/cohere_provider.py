"""Cohere provider implementation (v2 chat REST API)."""

from __future__ import annotations

from typing import Any

from .base import GenerationRequest, NormalizedResult
from .http_provider import HTTPProvider


class CohereProvider(HTTPProvider):
    """Cohere Command provider.

    Cohere does not always report token usage; missing counts fall back to
    the character heuristic in :func:`~deepflow.providers.base.estimate_tokens`.
    """

    name = "cohere"
    DEFAULT_BASE_URL = "https://api.cohere.com/v2"

    MODELS = [
        "command-r-plus",
        "command-r",
        "command",
        "command-light",
    ]

    CAPABILITIES = {
        "command-r-plus": frozenset({"function_calling", "json_mode"}),
        "command-r": frozenset({"function_calling", "json_mode"}),
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
        return await self._post_json("/chat", self._build_payload(request), request)

    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        message = raw.get("message") or {}
        blocks = message.get("content") or []
        content = "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")

        tokens = (raw.get("usage") or {}).get("tokens") or {}
        finish_reason = raw.get("finish_reason")
        return self._result(
            request,
            content,
            latency_ms,
            input_tokens=tokens.get("input_tokens"),
            output_tokens=tokens.get("output_tokens"),
            finish_reason=finish_reason.lower() if finish_reason else "completed",
        )
