"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from deepflow.budget import SpendGuard, UsageLedger  # noqa: E402
from deepflow.config import get_settings  # noqa: E402
from deepflow.providers import MockProvider, ProviderConfig, ProviderRegistry  # noqa: E402
from deepflow.state import SQLiteBackend  # noqa: E402
from deepflow.utils import RetryConfig  # noqa: E402
from deepflow.workflow import (  # noqa: E402
    SessionStore,
    WorkflowDefinition,
    WorkflowOrchestrator,
    WorkflowRegistry,
)

# Model prefixes routed to the mock providers registered below
MOCK_PREFIXES = {"gpt-": "openai", "claude-": "anthropic", "gemini-": "google"}


def priced_mock(name: str, input_price: float = 0.0, output_price: float = 0.0, **kwargs):
    """MockProvider registered as ``name`` with the given per-1k pricing."""
    config = ProviderConfig(
        name=name,
        api_key="mock",
        input_cost_per_1k=input_price,
        output_cost_per_1k=output_price,
    )
    return MockProvider(config=config, provider_name=name, **kwargs)


def linear_workflow(workflow_id: str = "linear", estimated_cost: float | None = 0.01) -> dict:
    """Three dependent steps across three providers."""
    estimate = {"max_tokens": 500}
    if estimated_cost is not None:
        estimate["estimated_cost"] = estimated_cost
    return {
        "id": workflow_id,
        "name": "Linear Research",
        "steps": [
            {
                "id": "research",
                "name": "Research",
                "agent_role": "researcher",
                "model": "gemini-1.5-pro",
                "prompt_template": "Research: {{user_input.content}}",
                "cost_estimate": estimate,
            },
            {
                "id": "analysis",
                "name": "Analysis",
                "agent_role": "analyzer",
                "model": "claude-3-sonnet-20240229",
                "prompt_template": "Analyze: {{research.content}}",
                "depends_on": ["research"],
                "cost_estimate": estimate,
            },
            {
                "id": "synthesis",
                "name": "Synthesis",
                "agent_role": "synthesizer",
                "model": "gpt-4-turbo",
                "prompt_template": "Combine {{research.content}} with {{analysis.content}}",
                "depends_on": ["research", "analysis"],
                "cost_estimate": estimate,
            },
        ],
    }


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def backend():
    backend = SQLiteBackend(db_path=":memory:")
    yield backend
    backend.close()


@pytest.fixture
def ledger(backend):
    return UsageLedger(backend)


@pytest.fixture
def guard(ledger):
    return SpendGuard(ledger)


@pytest.fixture
def store(backend):
    return SessionStore(backend=backend)


@pytest.fixture
def mocks():
    return {
        "google": priced_mock("google"),
        "anthropic": priced_mock("anthropic"),
        "openai": priced_mock("openai"),
    }


@pytest.fixture
def providers(mocks):
    return ProviderRegistry(mocks, prefixes=MOCK_PREFIXES)


@pytest.fixture
def workflows():
    return WorkflowRegistry([WorkflowDefinition.from_dict(linear_workflow())])


@pytest.fixture
def orchestrator(workflows, store, guard, providers):
    return WorkflowOrchestrator(
        workflows,
        store,
        guard,
        providers,
        retry=RetryConfig(max_retries=0, base_delay=0, jitter=False),
    )


@pytest.fixture
def make_mock():
    return priced_mock


@pytest.fixture
def make_workflow():
    return linear_workflow
