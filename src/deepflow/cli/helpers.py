"""Shared helpers for CLI modules: component factories and output."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any, TypeVar

import typer
from rich.console import Console

from deepflow.config import get_settings
from deepflow.errors import DeepflowError

if TYPE_CHECKING:
    from deepflow.config import Settings
    from deepflow.workflow import WorkflowOrchestrator

T = TypeVar("T")

console = Console()

DEFAULT_USER = "local"

USER_OPTION = typer.Option(
    DEFAULT_USER, "--user", "-u", envvar="DEEPFLOW_USER", help="User the spend is charged to"
)
JSON_OPTION = typer.Option(False, "--json", "-j", help="Output as JSON")


def build_orchestrator(settings: Settings) -> WorkflowOrchestrator:
    """Wire the orchestrator, spend guard and session store from settings.

    The usage ledger and the session store share one database.
    """
    from deepflow.budget import SpendGuard, UsageLedger
    from deepflow.providers import SettingsCredentialStore, build_registry
    from deepflow.state import create_backend
    from deepflow.workflow import SessionStore, WorkflowOrchestrator, WorkflowRegistry

    backend = create_backend(settings.database_url)
    credentials = SettingsCredentialStore(settings)
    return WorkflowOrchestrator(
        WorkflowRegistry.with_builtins(settings.workflows_dir),
        SessionStore(backend=backend),
        SpendGuard(UsageLedger(backend), settings=settings),
        registry_factory=lambda user_id: build_registry(
            credentials.get_credentials(user_id), settings=settings
        ),
        settings=settings,
    )


def get_orchestrator() -> WorkflowOrchestrator:
    try:
        return build_orchestrator(get_settings())
    except DeepflowError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        raise typer.Exit(1)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def fail(error: DeepflowError) -> typer.Exit:
    """Print a Deepflow error and return the exit to raise."""
    console.print(f"[red]{error.code}:[/red] {error.message}")
    return typer.Exit(1)


STATUS_STYLES = {
    "pending": "dim",
    "running": "cyan",
    "paused": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"
