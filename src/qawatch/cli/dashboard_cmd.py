"""qawatch dashboard command."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from qawatch.core.config import load_config
from qawatch.core.errors import ConfigError
from qawatch.core.output import console, print_error
from qawatch.metrics.sink import JsonMetricsSink
from qawatch.state.broadcaster import EventBroadcaster


@click.command()
@click.option("--port", type=int, default=None, help="Port to serve on (default: 3000)")
@click.option("--no-open", is_flag=True, help="Don't auto-open browser")
@click.option("--target", "-t", "target", default=".", help="Project directory (default: current dir)")
def dashboard(port: int | None, no_open: bool, target: str):
    """Serve the dashboard without starting a run.

    Shows the metrics recorded by previous runs. Live run progress is served
    by `qawatch run` itself.
    """
    project_path = Path(target).resolve()
    try:
        config = load_config(project_path)
    except ConfigError as e:
        print_error(e)
        raise SystemExit(1)

    effective_port = port or config.dashboard.port
    auto_open = not no_open and config.dashboard.auto_open_browser

    console.print("\n  [bold]qawatch dashboard[/bold]")
    try:
        asyncio.run(_serve(project_path, config.dashboard.host, effective_port, auto_open))
    except KeyboardInterrupt:
        console.print("\n  Dashboard stopped.")


async def _serve(project_path: Path, host: str, port: int, auto_open: bool) -> None:
    from qawatch.dashboard.server import DashboardServer

    server = DashboardServer(
        EventBroadcaster(),
        host=host,
        port=port,
        metrics_path=JsonMetricsSink(project_path).path,
    )
    url = await server.start(open_browser=auto_open)
    console.print(f"  Serving on {url} (Ctrl+C to stop)")
    await server.serve_forever()
