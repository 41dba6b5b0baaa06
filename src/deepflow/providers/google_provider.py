"""Google Gemini provider implementation (Generative Language REST API)."""

from __future__ import annotations

from typing import Any

from .base import GenerationRequest, NormalizedResult
from .http_provider import HTTPProvider

_GEMINI = frozenset({"vision", "function_calling", "json_mode"})


class GoogleProvider(HTTPProvider):
    """Google Gemini provider."""

    name = "google"
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    MODELS = [
        "gemini-1.5-pro",
        "gemini-1.5-flash",
        "gemini-2.0-flash",
        "gemini-pro",
    ]

    CAPABILITIES = {
        "gemini-1.5-pro": _GEMINI,
        "gemini-1.5-flash": _GEMINI,
        "gemini-2.0-flash": _GEMINI,
        "gemini-pro": frozenset({"function_calling"}),
    }

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.config.api_key or ""}

    def _build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        # Gemini names the assistant role "model"
        contents = [
            {
                "role": "model" if m.get("role") == "assistant" else "user",
                "parts": [{"text": str(m.get("content", ""))}],
            }
            for m in request.to_messages()
        ]
        generation_config: dict[str, Any] = {"temperature": request.temperature}
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens

        payload: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        system = request.system_text()
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def _invoke(self, request: GenerationRequest) -> Any:
        return await self._post_json(
            f"/models/{request.model}:generateContent", self._build_payload(request), request
        )

    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        candidates = raw.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        parts = (candidate.get("content") or {}).get("parts") or []
        content = "".join(part.get("text", "") for part in parts)

        usage = raw.get("usageMetadata") or {}
        finish_reason = candidate.get("finishReason")
        return self._result(
            request,
            content,
            latency_ms,
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
            finish_reason=finish_reason.lower() if finish_reason else "completed",
            model=raw.get("modelVersion"),
        )
