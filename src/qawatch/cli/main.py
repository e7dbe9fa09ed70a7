"""Click CLI entry point for qawatch."""

from __future__ import annotations

import click

from qawatch._version import __version__


@click.group()
@click.version_option(version=__version__, prog_name="qawatch")
def cli():
    """qawatch - Fix production readiness issues until the code is clean.

    Runs detect, fix and verify cycles through the Claude Code CLI, with
    backups, rollback and a live dashboard.
    """
    pass


# Import and register subcommands
from qawatch.cli.run_cmd import run  # noqa: E402
from qawatch.cli.metrics_cmd import metrics  # noqa: E402
from qawatch.cli.dashboard_cmd import dashboard  # noqa: E402

cli.add_command(run)
cli.add_command(metrics)
cli.add_command(dashboard)


if __name__ == "__main__":
    cli()
