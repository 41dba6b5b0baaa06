"""OpenAI provider implementation."""

from __future__ import annotations

import time
from typing import Any

import openai

from deepflow.errors import ProviderError, RateLimitError

from .base import ChunkCallback, GenerationRequest, NormalizedResult, Provider

_ALL = frozenset({"vision", "function_calling", "json_mode"})


class OpenAIProvider(Provider):
    """OpenAI chat completions provider."""

    name = "openai"

    MODELS = [
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-3.5-turbo",
    ]

    CAPABILITIES = {
        "gpt-4o": _ALL,
        "gpt-4o-mini": _ALL,
        "gpt-4-turbo": _ALL,
        "gpt-4": frozenset({"function_calling"}),
        "gpt-3.5-turbo": frozenset({"function_calling", "json_mode"}),
    }

    @property
    def supports_streaming(self) -> bool:
        return True

    def _get_client(self, request: GenerationRequest) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self.config.api_key:
                raise ProviderError(
                    "OpenAI API key not configured", provider=self.name, model=request.model
                )
            # max_retries=0: retry policy belongs to the orchestrator
            self._client = openai.AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        return self._client

    def _build_kwargs(self, request: GenerationRequest) -> dict[str, Any]:
        messages = request.to_messages()
        system = request.system_text()
        if system:
            messages.insert(0, {"role": "system", "content": system})

        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens
        return kwargs

    async def _invoke(self, request: GenerationRequest) -> Any:
        client = self._get_client(request)
        return await client.chat.completions.create(**self._build_kwargs(request))

    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        choice = raw.choices[0]
        usage = getattr(raw, "usage", None)
        return self._result(
            request,
            choice.message.content,
            latency_ms,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            finish_reason=choice.finish_reason,
            model=getattr(raw, "model", None),
        )

    async def _stream(
        self, request: GenerationRequest, on_chunk: ChunkCallback, started: float
    ) -> NormalizedResult:
        client = self._get_client(request)
        stream = await client.chat.completions.create(
            **self._build_kwargs(request),
            stream=True,
            stream_options={"include_usage": True},
        )

        parts: list[str] = []
        finish_reason = None
        usage = None
        model = None
        async for chunk in stream:
            model = getattr(chunk, "model", None) or model
            if getattr(chunk, "usage", None):
                usage = chunk.usage
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta.content if choice.delta else None
            if delta:
                parts.append(delta)
                await on_chunk(delta)
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        return self._result(
            request,
            "".join(parts),
            (time.perf_counter() - started) * 1000,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            finish_reason=finish_reason,
            model=model,
        )

    def _wrap_error(self, exc: Exception, request: GenerationRequest) -> ProviderError:
        if isinstance(exc, openai.RateLimitError):
            return RateLimitError(
                f"OpenAI rate limit: {exc}", provider=self.name, model=request.model
            )
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(
                f"OpenAI connection error: {exc}",
                provider=self.name,
                model=request.model,
                retryable=True,
            )
        return super()._wrap_error(exc, request)
