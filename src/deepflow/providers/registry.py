"""Constructor-injected provider registry.

Maps model identifiers to providers through a prefix table and prices every
normalized result with the resolved provider's config.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from deepflow.errors import UnknownProviderError

from .anthropic_provider import AnthropicProvider
from .base import (
    ChunkCallback,
    CostBreakdown,
    GenerationRequest,
    NormalizedResult,
    Provider,
    ProviderConfig,
)
from .cohere_provider import CohereProvider
from .google_provider import GoogleProvider
from .mistral_provider import MistralProvider
from .openai_provider import OpenAIProvider

if TYPE_CHECKING:
    from deepflow.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PREFIXES: dict[str, str] = {
    "gpt-": "openai",
    "claude-": "anthropic",
    "gemini-": "google",
    "command": "cohere",
    "mistral-": "mistral",
}

PROVIDER_CLASSES: dict[str, type[Provider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "cohere": CohereProvider,
    "mistral": MistralProvider,
}


class ProviderRegistry:
    """Registry of provider instances keyed by name.

    Args:
        providers: Provider instances, as a name mapping or an iterable
            (registered under each provider's ``name``).
        prefixes: Model prefix to provider name table. Defaults to
            :data:`DEFAULT_MODEL_PREFIXES`.
    """

    def __init__(
        self,
        providers: Mapping[str, Provider] | Iterable[Provider] | None = None,
        prefixes: Mapping[str, str] | None = None,
    ):
        self._providers: dict[str, Provider] = {}
        self._prefixes: dict[str, str] = dict(
            DEFAULT_MODEL_PREFIXES if prefixes is None else prefixes
        )
        if isinstance(providers, Mapping):
            for name, provider in providers.items():
                self.register(provider, name=name)
        elif providers is not None:
            for provider in providers:
                self.register(provider)

    def register(
        self, provider: Provider, name: str | None = None, prefixes: Iterable[str] = ()
    ) -> Provider:
        """Register a provider, optionally claiming model prefixes for it."""
        name = name or provider.name
        self._providers[name] = provider
        for prefix in prefixes:
            self._prefixes[prefix] = name
        logger.debug("Registered provider %s", name)
        return provider

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def add_prefix(self, prefix: str, provider_name: str) -> None:
        self._prefixes[prefix] = provider_name

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def list_providers(self) -> list[str]:
        return list(self._providers)

    @property
    def prefixes(self) -> dict[str, str]:
        return dict(self._prefixes)

    def resolve(self, model: str) -> str:
        """Return the provider name for ``model``; the longest prefix wins.

        Raises:
            UnknownProviderError: If no prefix matches
        """
        matches = [p for p in self._prefixes if model.startswith(p)]
        if not matches:
            raise UnknownProviderError(model)
        return self._prefixes[max(matches, key=len)]

    def provider_for(self, model: str) -> Provider:
        name = self.resolve(model)
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(
                model, f"Provider '{name}' for model '{model}' is not registered"
            )
        return provider

    async def generate(
        self, request: GenerationRequest, on_chunk: ChunkCallback | None = None
    ) -> NormalizedResult:
        """Dispatch a request and return the priced, normalized result.

        Raises:
            UnknownProviderError: If the model maps to no registered provider
            ProviderError: If the provider call fails
        """
        provider = self.provider_for(request.model)
        result = await provider.generate(request, on_chunk=on_chunk)
        return result.with_cost(provider.cost(result))

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> CostBreakdown:
        """Price a hypothetical call without contacting the provider."""
        provider = self.provider_for(model)
        return CostBreakdown.compute(input_tokens, output_tokens, provider.config)

    def reload(self, name: str, config: ProviderConfig) -> None:
        """Apply a new config (e.g. rotated credentials) to a provider."""
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(name, f"Provider '{name}' is not registered")
        provider.reconfigure(config)
        logger.info("Reloaded configuration for provider %s", name)

    def available_models(self) -> dict[str, list[str]]:
        return {name: provider.list_models() for name, provider in self._providers.items()}

    def supports_capability(self, model: str, capability: str) -> bool:
        try:
            provider = self.provider_for(model)
        except UnknownProviderError:
            return False
        return provider.supports_capability(model, capability)


def build_registry(
    credentials: Mapping[str, str],
    settings: Settings | None = None,
    pricing: Mapping[str, tuple[float, float]] | None = None,
    prefixes: Mapping[str, str] | None = None,
) -> ProviderRegistry:
    """Build a registry of the built-in providers from a credential map.

    Every built-in provider is registered; one without a credential fails
    with ``ProviderError`` when called rather than being unresolvable.
    """
    timeout = settings.provider_timeout if settings else 120.0
    registry = ProviderRegistry(prefixes=prefixes)
    for name, provider_class in PROVIDER_CLASSES.items():
        kwargs: dict = {"api_key": credentials.get(name), "timeout": timeout}
        if pricing and name in pricing:
            kwargs["input_cost_per_1k"], kwargs["output_cost_per_1k"] = pricing[name]
        config = ProviderConfig.with_default_pricing(name, **kwargs)
        registry.register(provider_class(config=config))
    return registry
