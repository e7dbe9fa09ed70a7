"""Rich terminal formatting for qawatch output."""

from __future__ import annotations

import logging
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from qawatch.core.errors import format_user_error
from qawatch.core.models import Issue, Severity

console = Console()
error_console = Console(stderr=True)

MAX_REMAINING_SHOWN = 5

SEVERITY_ICONS = {
    Severity.CRITICAL: "[red]●[/red]",
    Severity.HIGH: "[yellow]●[/yellow]",
    Severity.MEDIUM: "[blue]●[/blue]",
    Severity.LOW: "[dim]●[/dim]",
}

STATUS_COLORS = {
    "complete": "green",
    "stopped": "yellow",
}


def format_issue(issue: Issue) -> str:
    """Format a single issue for terminal output."""
    icon = SEVERITY_ICONS.get(issue.severity, "●")
    return f"  {icon} {issue.type}  {issue.message}  [dim]{issue.file}:{issue.line}[/dim]"


def print_banner(files: int, max_cycles: int, budget_hard: float) -> None:
    console.print()
    console.print("  [bold]qawatch[/bold]  fix-until-clean mode")
    console.print(
        f"  {files} files | up to {max_cycles} cycles | budget ${budget_hard:.2f}"
    )
    console.print("  [dim]Press Ctrl+C to stop after the current step.[/dim]")
    console.print()


def print_event(message: dict[str, Any]) -> None:
    """Print the run events worth showing in the terminal."""
    kind = message.get("type")
    data = message.get("data", {})

    if kind == "cycle_started":
        console.rule(f"[bold]Cycle {data['cycle']}/{data['max_cycles']}[/bold]")
    elif kind == "detection_complete":
        total = len(data.get("issues", []))
        console.print(f"  Found {total} issue(s), {data['auto_fixable']} auto-fixable")
    elif kind == "fix_complete":
        if data["success"]:
            console.print(f"  [green]✅ {data['file']}[/green]  {len(data['fixed'])} fixed")
        else:
            console.print(f"  [red]❌ {data['file']}[/red]  not fixed")
    elif kind == "verification_result" and data.get("restored"):
        console.print(f"     [yellow]-> restored {data['file']} from backup[/yellow]")
    elif kind == "budget_warning":
        console.print(
            f"  [yellow]Budget warning: ${data['current_cost']:.2f} spent "
            f"(threshold ${data['warning_threshold']:.2f})[/yellow]"
        )
    elif kind == "cycle_complete":
        if data.get("error"):
            console.print(f"  [red]Cycle {data['cycle']} failed: {data['error']}[/red]")
        else:
            console.print(
                f"  [dim]Cycle {data['cycle']}: fixed {data['fixed_this_cycle']}, "
                f"{data['remaining']} remaining, ${data['cost']:.4f} total[/dim]"
            )


def print_run_summary(outcome: Any) -> None:
    """Print the end-of-run panel."""
    color = STATUS_COLORS.get(outcome.status, "red")
    minutes, seconds = divmod(int(outcome.duration), 60)

    lines = [
        "",
        f"  Status:      [{color}]{outcome.status}[/{color}] ({outcome.reason})",
        f"  Cycles:      {outcome.cycles}",
        f"  Issues fixed: {outcome.total_fixed}",
        f"  Total cost:  ${outcome.total_cost:.4f}",
        f"  Duration:    {minutes}m {seconds}s",
    ]
    if outcome.errored_cycles:
        lines.append(f"  [yellow]Failed cycles: {outcome.errored_cycles}[/yellow]")

    remaining = outcome.remaining_issues
    if remaining:
        lines.append("")
        lines.append(f"  {len(remaining)} issue(s) need manual attention:")
        for issue in remaining[:MAX_REMAINING_SHOWN]:
            lines.append(format_issue(issue))
        if len(remaining) > MAX_REMAINING_SHOWN:
            lines.append(f"  [dim]... and {len(remaining) - MAX_REMAINING_SHOWN} more[/dim]")
    lines.append("")

    console.print(Panel(
        "\n".join(lines),
        title="[bold]qawatch run summary[/bold]",
        border_style=color,
        padding=(0, 1),
    ))


def print_error(error: BaseException) -> None:
    message, help_text = format_user_error(error)
    error_console.print(f"\n  [red]Error:[/red] {message}")
    if help_text:
        error_console.print(f"  [dim]{help_text}[/dim]")
    error_console.print()


def setup_logging(verbose: bool = False) -> None:
    """Route ``qawatch`` log records through rich on stderr."""
    logger = logging.getLogger("qawatch")
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=error_console, show_path=verbose, markup=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
