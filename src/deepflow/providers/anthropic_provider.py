"""Anthropic Claude provider implementation."""

from __future__ import annotations

import time
from typing import Any

import anthropic

from deepflow.errors import ProviderError, RateLimitError

from .base import ChunkCallback, GenerationRequest, NormalizedResult, Provider

_DEFAULT_MAX_TOKENS = 4096
_CLAUDE_3 = frozenset({"vision", "function_calling"})


class AnthropicProvider(Provider):
    """Anthropic Claude API provider."""

    name = "anthropic"

    MODELS = [
        "claude-sonnet-4-20250514",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    ]

    CAPABILITIES = {model: _CLAUDE_3 for model in MODELS}

    @property
    def supports_streaming(self) -> bool:
        return True

    def _get_client(self, request: GenerationRequest) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self.config.api_key:
                raise ProviderError(
                    "Anthropic API key not configured", provider=self.name, model=request.model
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        return self._client

    def _build_kwargs(self, request: GenerationRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": request.to_messages(),
            "max_tokens": request.max_tokens or _DEFAULT_MAX_TOKENS,
            "temperature": request.temperature,
        }
        system = request.system_text()
        if system:
            kwargs["system"] = system
        return kwargs

    async def _invoke(self, request: GenerationRequest) -> Any:
        client = self._get_client(request)
        return await client.messages.create(**self._build_kwargs(request))

    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        # Only text blocks carry content; tool_use blocks are ignored
        content = "".join(
            block.text for block in raw.content or [] if getattr(block, "type", "text") == "text"
        )
        usage = getattr(raw, "usage", None)
        return self._result(
            request,
            content,
            latency_ms,
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
            finish_reason=raw.stop_reason,
            model=getattr(raw, "model", None),
        )

    async def _stream(
        self, request: GenerationRequest, on_chunk: ChunkCallback, started: float
    ) -> NormalizedResult:
        client = self._get_client(request)
        async with client.messages.stream(**self._build_kwargs(request)) as stream:
            async for text in stream.text_stream:
                if text:
                    await on_chunk(text)
            final = await stream.get_final_message()

        return self.normalize(final, request, (time.perf_counter() - started) * 1000)

    def _wrap_error(self, exc: Exception, request: GenerationRequest) -> ProviderError:
        if isinstance(exc, anthropic.RateLimitError):
            return RateLimitError(
                f"Anthropic rate limit: {exc}", provider=self.name, model=request.model
            )
        if isinstance(exc, anthropic.APIConnectionError):
            return ProviderError(
                f"Anthropic connection error: {exc}",
                provider=self.name,
                model=request.model,
                retryable=True,
            )
        return super()._wrap_error(exc, request)
