"""Provider adapter layer."""

from deepflow.errors import ProviderError, RateLimitError, UnknownProviderError

from .anthropic_provider import AnthropicProvider
from .base import (
    CHARS_PER_TOKEN,
    DEFAULT_PRICING,
    CostBreakdown,
    GenerationRequest,
    NormalizedResult,
    Provider,
    ProviderConfig,
    estimate_tokens,
)
from .cohere_provider import CohereProvider
from .credentials import CredentialStore, SettingsCredentialStore, StaticCredentialStore
from .google_provider import GoogleProvider
from .mistral_provider import MistralProvider
from .mock_provider import MockProvider
from .openai_provider import OpenAIProvider
from .registry import (
    DEFAULT_MODEL_PREFIXES,
    PROVIDER_CLASSES,
    ProviderRegistry,
    build_registry,
)

__all__ = [
    "CHARS_PER_TOKEN",
    "DEFAULT_MODEL_PREFIXES",
    "DEFAULT_PRICING",
    "PROVIDER_CLASSES",
    "AnthropicProvider",
    "CohereProvider",
    "CostBreakdown",
    "CredentialStore",
    "GenerationRequest",
    "GoogleProvider",
    "MistralProvider",
    "MockProvider",
    "NormalizedResult",
    "OpenAIProvider",
    "Provider",
    "ProviderConfig",
    "ProviderError",
    "ProviderRegistry",
    "RateLimitError",
    "SettingsCredentialStore",
    "StaticCredentialStore",
    "UnknownProviderError",
    "build_registry",
    "estimate_tokens",
]
