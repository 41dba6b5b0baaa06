"""Deepflow CLI - Main entry point."""

from __future__ import annotations

from typing import Annotated

import typer

from deepflow import __version__
from deepflow.config import configure_logging, get_settings

from .helpers import console

app = typer.Typer(
    name="deepflow",
    help="Multi-provider AI research workflows with spend control.",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold cyan]deepflow[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level."),
    ] = None,
):
    """Deepflow - chain AI agents across providers under spend limits.

    [bold]Quick Start:[/bold]

        deepflow run "QUESTION"     Run the default deep research workflow
        deepflow status ID          Show an execution's progress
        deepflow resume ID          Resume a paused execution
        deepflow usage show         Show today's and this month's spend
    """
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        format=settings.log_format,
        sanitize_logs=settings.sanitize_logs,
    )


# =============================================================================
# Register commands
# =============================================================================

from .commands.usage import usage_app  # noqa: E402
from .commands.workflow import (  # noqa: E402
    cancel,
    executions,
    pause,
    resume,
    run,
    status,
    workflows_app,
)

app.add_typer(workflows_app, name="workflows")
app.add_typer(usage_app, name="usage")

app.command()(run)
app.command()(resume)
app.command()(status)
app.command()(pause)
app.command()(cancel)
app.command()(executions)


if __name__ == "__main__":
    app()
