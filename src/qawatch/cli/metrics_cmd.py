"""qawatch metrics command."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.table import Table

from qawatch.core.output import console
from qawatch.metrics.sink import JsonMetricsSink

TOP_N = 5


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw metrics as JSON")
@click.option("--target", "-t", "target", default=".", help="Project directory (default: current dir)")
def metrics(as_json: bool, target: str):
    """Show accumulated review and fix metrics."""
    data = JsonMetricsSink(Path(target).resolve()).load()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    agg = data["aggregates"]
    if not agg["totalReviews"]:
        console.print("\n  No metrics yet. Run `qawatch run` first.\n")
        return

    table = Table(title="qawatch metrics", show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Reviews", str(agg["totalReviews"]))
    table.add_row("Issues found", str(agg["totalIssuesFound"]))
    table.add_row("Issues fixed", str(agg["totalIssuesFixed"]))
    table.add_row("Total cost", f"${agg['totalCost']:.4f}")
    table.add_row("Time spent", f"{agg['totalDuration']:.1f}s")
    table.add_row("Est. time saved", f"{agg['estimatedTimeSaved']} min")

    console.print()
    console.print(table)

    for title, counts in (
        ("Top issue types", data["issueTypeBreakdown"]),
        ("Files with most issues", data["topFiles"]),
    ):
        if not counts:
            continue
        console.print(f"\n  [bold]{title}[/bold]")
        ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:TOP_N]
        for name, count in ranked:
            console.print(f"    {count:>4}  {name}")
    console.print()
