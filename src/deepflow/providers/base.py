"""Base classes for the provider adapter layer.

Every provider turns a :class:`GenerationRequest` into one upstream call and
maps the provider-specific response into a :class:`NormalizedResult`. Pricing
is applied once, in :meth:`Provider.cost`, from the provider's
:class:`ProviderConfig`.
"""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, replace
from typing import Any, ClassVar

from deepflow.errors import ProviderError, RateLimitError, ValidationError

# Heuristic used whenever a provider omits token counts
CHARS_PER_TOKEN = 4

# USD per 1,000 tokens (input, output)
DEFAULT_PRICING: dict[str, tuple[float, float]] = {
    "openai": (0.01, 0.03),
    "anthropic": (0.003, 0.015),
    "google": (0.00035, 0.00105),
    "cohere": (0.0015, 0.002),
    "mistral": (0.0007, 0.0007),
}

ChunkCallback = Callable[[str], Awaitable[None]]


def estimate_tokens(text: str | None) -> int:
    """Approximate a token count from character length."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ProviderConfig:
    """Configuration and pricing for one provider."""

    name: str
    api_key: str | None = None
    base_url: str | None = None
    timeout: float = 120.0
    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.input_cost_per_1k < 0 or self.output_cost_per_1k < 0:
            raise ValidationError(f"Pricing for provider '{self.name}' must be non-negative")

    @classmethod
    def with_default_pricing(cls, name: str, **kwargs: Any) -> ProviderConfig:
        """Build a config using the built-in price table for ``name``."""
        input_price, output_price = DEFAULT_PRICING.get(name, (0.0, 0.0))
        kwargs.setdefault("input_cost_per_1k", input_price)
        kwargs.setdefault("output_cost_per_1k", output_price)
        return cls(name=name, **kwargs)


@dataclass
class GenerationRequest:
    """Provider-agnostic generation request.

    Either ``prompt`` or ``messages`` (role-tagged dicts) must be given.
    """

    model: str
    prompt: str | None = None
    messages: list[dict] | None = None
    system_prompt: str | None = None
    max_tokens: int | None = None
    temperature: float = 0.7
    stream: bool = False
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.model:
            raise ValidationError("GenerationRequest requires a model")
        if self.prompt is None and not self.messages:
            raise ValidationError("GenerationRequest requires a prompt or messages")

    def to_messages(self) -> list[dict]:
        """Return chat messages, excluding the system prompt."""
        if self.messages:
            return [dict(m) for m in self.messages if m.get("role") != "system"]
        return [{"role": "user", "content": self.prompt or ""}]

    def system_text(self) -> str | None:
        """System prompt from the field or a system-role message."""
        if self.system_prompt:
            return self.system_prompt
        for message in self.messages or []:
            if message.get("role") == "system":
                return message.get("content")
        return None

    def prompt_text(self) -> str:
        """Flatten the request into one string for token estimation."""
        parts = [self.system_text() or ""]
        parts.extend(str(m.get("content", "")) for m in self.to_messages())
        return "\n".join(p for p in parts if p)


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one generation in USD."""

    input_cost: float
    output_cost: float
    total_cost: float

    @classmethod
    def compute(
        cls, input_tokens: int, output_tokens: int, config: ProviderConfig
    ) -> CostBreakdown:
        input_cost = (max(input_tokens, 0) / 1000) * config.input_cost_per_1k
        output_cost = (max(output_tokens, 0) / 1000) * config.output_cost_per_1k
        return cls(
            input_cost=input_cost, output_cost=output_cost, total_cost=input_cost + output_cost
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class NormalizedResult:
    """The one response shape every provider is mapped into."""

    content: str
    input_tokens: int
    output_tokens: int
    latency_ms: float
    finish_reason: str
    provider: str = ""
    model: str = ""
    cost: CostBreakdown | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def with_cost(self, cost: CostBreakdown) -> NormalizedResult:
        return replace(self, cost=cost)

    def to_dict(self) -> dict:
        data = {
            "content": self.content,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
            "finish_reason": self.finish_reason,
            "provider": self.provider,
            "model": self.model,
        }
        if self.cost:
            data.update(self.cost.to_dict())
        return data


class Provider(ABC):
    """Abstract base class for AI providers.

    Subclasses implement :meth:`_invoke` (one upstream call returning the raw
    provider response) and :meth:`normalize`. Providers that can deliver
    incremental output also implement :meth:`_stream` and set
    ``supports_streaming``.
    """

    name: ClassVar[str] = ""
    MODELS: ClassVar[list[str]] = []
    # model -> capability names ("vision", "function_calling", "json_mode")
    CAPABILITIES: ClassVar[dict[str, frozenset[str]]] = {}

    def __init__(self, config: ProviderConfig | None = None, api_key: str | None = None):
        if config is None:
            config = ProviderConfig.with_default_pricing(self.name, api_key=api_key)
        self.config = config
        self._client: Any = None

    @property
    def supports_streaming(self) -> bool:
        return False

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def reconfigure(self, config: ProviderConfig) -> None:
        """Swap in a new config (credential rotation) and drop cached clients."""
        self.config = config
        self._client = None

    async def generate(
        self, request: GenerationRequest, on_chunk: ChunkCallback | None = None
    ) -> NormalizedResult:
        """Run one generation and return the normalized result.

        When ``request.stream`` is set, a callback is given and the provider
        supports streaming, content deltas are pushed to ``on_chunk`` as they
        arrive.

        Raises:
            ProviderError: On any upstream or normalization failure
        """
        started = time.perf_counter()
        try:
            if on_chunk is not None and request.stream and self.supports_streaming:
                return await self._stream(request, on_chunk, started)
            raw = await self._invoke(request)
            return self.normalize(raw, request, (time.perf_counter() - started) * 1000)
        except ProviderError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self._wrap_error(e, request) from e

    @abstractmethod
    async def _invoke(self, request: GenerationRequest) -> Any:
        """Perform the upstream call and return the raw response."""

    async def _stream(
        self, request: GenerationRequest, on_chunk: ChunkCallback, started: float
    ) -> NormalizedResult:
        """Stream the response through ``on_chunk`` and return the assembled result.

        Optional hook: :meth:`generate` calls it only when
        ``supports_streaming`` is true, so providers that leave it
        unimplemented never reach this default.
        """
        raise NotImplementedError(f"{self.name} does not stream")

    @abstractmethod
    def normalize(
        self, raw: Any, request: GenerationRequest, latency_ms: float
    ) -> NormalizedResult:
        """Map a raw provider response into a :class:`NormalizedResult`."""

    def cost(self, result: NormalizedResult) -> CostBreakdown:
        """Price a normalized result with this provider's config."""
        return CostBreakdown.compute(result.input_tokens, result.output_tokens, self.config)

    def _result(
        self,
        request: GenerationRequest,
        content: str | None,
        latency_ms: float,
        *,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        finish_reason: str | None = None,
        model: str | None = None,
    ) -> NormalizedResult:
        """Build a result, estimating token counts the provider left out."""
        content = content or ""
        if input_tokens is None:
            input_tokens = estimate_tokens(request.prompt_text())
        if output_tokens is None:
            output_tokens = estimate_tokens(content)
        return NormalizedResult(
            content=content,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            latency_ms=latency_ms,
            finish_reason=finish_reason or "unknown",
            provider=self.name,
            model=model or request.model,
        )

    def _wrap_error(self, exc: Exception, request: GenerationRequest) -> ProviderError:
        """Translate an arbitrary exception into a ProviderError."""
        status_code = getattr(exc, "status_code", None)
        if status_code == 429:
            return RateLimitError(
                f"{self.name} rate limit: {exc}", provider=self.name, model=request.model
            )
        retryable = isinstance(exc, (TimeoutError, ConnectionError)) or (
            isinstance(status_code, int) and status_code >= 500
        )
        return ProviderError(
            f"{self.name} API error: {exc}",
            provider=self.name,
            model=request.model,
            status_code=status_code if isinstance(status_code, int) else None,
            retryable=retryable,
        )

    def list_models(self) -> list[str]:
        return list(self.MODELS)

    def supports_capability(self, model: str, capability: str) -> bool:
        return capability in self.CAPABILITIES.get(model, frozenset())
