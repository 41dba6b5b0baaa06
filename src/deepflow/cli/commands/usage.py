"""Usage commands: spend stats, limits and breakdowns."""

from __future__ import annotations

import typer
from rich.panel import Panel
from rich.table import Table

from deepflow.budget import UsageLimitsUpdate
from deepflow.errors import DeepflowError

from ..helpers import JSON_OPTION, USER_OPTION, console, fail, get_orchestrator

usage_app = typer.Typer(help="View spend and manage limits")

_STATUS_COLORS = {
    "safe": "green",
    "warning": "yellow",
    "limit_reached": "red",
    "exceeded": "red",
}


@usage_app.command("show")
def usage_show(user: str = USER_OPTION, json_output: bool = JSON_OPTION):
    """Show today's and this month's spend."""
    guard = get_orchestrator().guard
    try:
        stats = guard.get_usage_stats(user)
    except DeepflowError as e:
        raise fail(e)

    if json_output:
        print(stats.model_dump_json(indent=2))
        return

    color = _STATUS_COLORS.get(stats.status, "white")
    body = []
    for label, period in (("Today", stats.today), ("This month", stats.this_month)):
        body.append(
            f"{label}: [bold]${period.cost:.4f}[/bold] of ${period.limit:.2f} "
            f"({period.percentage:.1f}%), {period.requests} requests, "
            f"{period.tokens:,} tokens"
        )
    body.append(f"\nStatus: [{color}]{stats.status}[/{color}]")
    console.print(Panel("\n".join(body), title=f"Usage: {user}", border_style="blue"))


@usage_app.command("limits")
def usage_limits(
    user: str = USER_OPTION,
    daily: float = typer.Option(None, "--daily", help="Daily limit in USD"),
    monthly: float = typer.Option(None, "--monthly", help="Monthly limit in USD"),
    threshold: float = typer.Option(None, "--threshold", help="Warning threshold (0-1]"),
    hard_stop: bool = typer.Option(None, "--hard-stop/--no-hard-stop", help="Deny over-limit"),
    auto_pause: bool = typer.Option(
        None, "--auto-pause/--no-auto-pause", help="Pause workflows on denial"
    ),
    json_output: bool = JSON_OPTION,
):
    """Show or update spend limits."""
    guard = get_orchestrator().guard
    changes = {
        "daily_limit_usd": daily,
        "monthly_limit_usd": monthly,
        "warning_threshold": threshold,
        "hard_stop_enabled": hard_stop,
        "auto_pause_workflows": auto_pause,
    }
    changes = {key: value for key, value in changes.items() if value is not None}
    try:
        if changes:
            limits = guard.update_limits(user, UsageLimitsUpdate(**changes))
        else:
            limits = guard.get_limits(user)
    except (DeepflowError, ValueError) as e:
        console.print(f"[red]Invalid limits:[/red] {e}")
        raise typer.Exit(1)

    if json_output:
        print(limits.model_dump_json(indent=2))
        return

    console.print(
        Panel(
            f"Daily limit: [bold]${limits.daily_limit_usd:.2f}[/bold]\n"
            f"Monthly limit: [bold]${limits.monthly_limit_usd:.2f}[/bold]\n"
            f"Warning threshold: {limits.warning_threshold:.0%}\n"
            f"Hard stop: {limits.hard_stop_enabled}\n"
            f"Auto-pause workflows: {limits.auto_pause_workflows}",
            title=f"Limits: {user}",
            border_style="blue",
        )
    )


@usage_app.command("breakdown")
def usage_breakdown(
    user: str = USER_OPTION,
    days: int = typer.Option(30, "--days", "-d", help="Number of days to show"),
    json_output: bool = JSON_OPTION,
):
    """Show daily, provider and model spend."""
    guard = get_orchestrator().guard
    breakdown = guard.get_usage_breakdown(user, days=days)

    if json_output:
        print(breakdown.model_dump_json(indent=2))
        return

    if not breakdown.daily:
        console.print("[yellow]No usage recorded[/yellow]")
        return

    table = Table(title=f"Daily Spend (last {days} days)")
    table.add_column("Date", style="dim")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right", style="green")
    for day in breakdown.daily:
        table.add_row(day.day, str(day.requests), f"{day.tokens:,}", f"${day.cost:.4f}")
    console.print(table)

    for title, entries in (("Provider", breakdown.providers), ("Model", breakdown.models)):
        table = Table(title=f"By {title}")
        table.add_column(title, style="cyan")
        table.add_column("Requests", justify="right")
        table.add_column("Cost", justify="right", style="green")
        for name, entry in sorted(entries.items(), key=lambda item: -item[1].cost):
            table.add_row(name, str(entry.requests), f"${entry.cost:.4f}")
        console.print(table)

    console.print(
        f"Total: [bold]${breakdown.total_cost:.4f}[/bold] (trend: {breakdown.cost_trend})"
    )
