"""qawatch run command."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Any

import click

from qawatch.core.config import QAWatchConfig, load_config
from qawatch.core.errors import ConfigError, ErrorLog, ReviewerNotFound
from qawatch.core.files import collect_files
from qawatch.core.output import (
    console,
    print_banner,
    print_error,
    print_event,
    print_run_summary,
    setup_logging,
)
from qawatch.dashboard.server import DashboardServer, NullChannel
from qawatch.loop.controller import CycleController, RunOutcome
from qawatch.loop.reviewer import ClaudeCLIReviewer
from qawatch.metrics.sink import JsonMetricsSink
from qawatch.state.broadcaster import EventBroadcaster


class ConsoleObserver:
    """Renders run events in the terminal."""

    async def send(self, message: dict[str, Any]) -> None:
        print_event(message)


@click.command()
@click.option("--max-cycles", type=int, default=None, help="Maximum fix cycles (default: 10)")
@click.option("--scope", type=str, default=None, help="Limit the run to one directory or file")
@click.option("--budget", type=float, default=None, help="Hard cost limit in USD (default: 20)")
@click.option("--no-dashboard", is_flag=True, help="Don't start the live dashboard")
@click.option("--port", type=int, default=None, help="Dashboard port (default: 3000)")
@click.option("--no-verify", is_flag=True, help="Skip re-detection after each fix")
@click.option("--no-backup", is_flag=True, help="Don't back up files before fixing")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option("--target", "-t", "target", default=".", help="Project directory (default: current dir)")
def run(
    max_cycles: int | None,
    scope: str | None,
    budget: float | None,
    no_dashboard: bool,
    port: int | None,
    no_verify: bool,
    no_backup: bool,
    verbose: bool,
    target: str,
):
    """Detect and fix issues until the code is clean.

    Each cycle reviews every file, fixes the auto-fixable issues one file at
    a time, re-checks the file and restores it from backup if the fix did
    not hold. Stops when nothing auto-fixable is left, or at the cycle or
    budget limit. Press Ctrl+C to stop after the current step.
    """
    setup_logging(verbose)
    project_path = Path(target).resolve()

    try:
        config = load_config(project_path)
    except ConfigError as e:
        print_error(e)
        raise SystemExit(1)

    _apply_overrides(config, max_cycles, budget, port, no_dashboard, no_verify, no_backup)

    files = collect_files(project_path, config, scope)
    if not files:
        console.print("\n  No files to review. Check watch_paths and extensions in qawatch.toml.\n")
        return

    reviewer = ClaudeCLIReviewer(config.reviewer, cwd=project_path)
    if reviewer.cli_path is None:
        print_error(ReviewerNotFound(config.reviewer.cli_path))
        raise SystemExit(1)

    print_banner(len(files), config.loop.max_cycles, config.loop.budget_hard)

    try:
        outcome = asyncio.run(_run_loop(reviewer, project_path, files, config))
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n  [yellow]Aborted.[/yellow] Files being fixed were restored from backup.\n")
        raise SystemExit(130)

    print_run_summary(outcome)
    if outcome.reason.startswith("fatal error"):
        raise SystemExit(1)


def _apply_overrides(
    config: QAWatchConfig,
    max_cycles: int | None,
    budget: float | None,
    port: int | None,
    no_dashboard: bool,
    no_verify: bool,
    no_backup: bool,
) -> None:
    if max_cycles is not None:
        if max_cycles < 1:
            raise click.BadParameter("must be at least 1", param_hint="--max-cycles")
        config.loop.max_cycles = max_cycles
    if budget is not None:
        config.loop.budget_hard = budget
        config.loop.budget_warning = min(config.loop.budget_warning, budget)
    if port is not None:
        config.dashboard.port = port
    if no_dashboard:
        config.dashboard.enabled = False
    if no_verify:
        config.fix.verify_after_fix = False
    if no_backup:
        config.fix.backup_files = False


async def _run_loop(
    reviewer: ClaudeCLIReviewer,
    project_path: Path,
    files: list[str],
    config: QAWatchConfig,
) -> RunOutcome:
    broadcaster = EventBroadcaster()
    await broadcaster.subscribe(ConsoleObserver())

    metrics = JsonMetricsSink(project_path)
    server: DashboardServer | NullChannel = NullChannel(broadcaster)
    if config.dashboard.enabled:
        server = DashboardServer(
            broadcaster,
            host=config.dashboard.host,
            port=config.dashboard.port,
            metrics_path=metrics.path,
        )
        try:
            url = await server.start(open_browser=config.dashboard.auto_open_browser)
            console.print(f"  Dashboard: [bold]{url}[/bold]\n")
        except OSError as e:
            console.print(f"  [yellow]Dashboard unavailable: {e}[/yellow]\n")
            server = NullChannel(broadcaster)

    controller = CycleController(
        reviewer,
        project_path=project_path,
        files=files,
        config=config,
        broadcaster=broadcaster,
        metrics=metrics,
        error_log=ErrorLog(project_path),
    )

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    def on_interrupt() -> None:
        if controller.stop_requested:
            # Second Ctrl+C: abandon the current step.
            main_task.cancel()
            return
        console.print("\n  [yellow]Stopping after the current step (Ctrl+C again to abort)...[/yellow]")
        controller.request_stop()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        pass  # Windows: KeyboardInterrupt aborts instead

    try:
        return await controller.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await server.stop()
