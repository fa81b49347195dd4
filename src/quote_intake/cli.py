# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line entry point of the retention batch job.

Usage:
    quote-cleanup                 # apply every enabled policy
    quote-cleanup --dry-run       # report what would be removed
    quote-cleanup --force         # clean even below the free-space floor
    quote-cleanup -c /etc/quote-intake/config.ini -v

The command exits 0 whenever the run completes, including runs where some
directories reported errors, and 1 when the configuration cannot be loaded.
"""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from .config import IntakeConfig, load_config
from .errors import ConfigurationError
from .filestore import format_size
from .logger import configure_logging, get_logger
from .notify import Notifier
from .reporting import ReportingSink, build_notifiers
from .retention import RetentionEngine, RetentionSummary, RunMode

console = Console()
err_console = Console(stderr=True)

logger = get_logger("QuoteCleanup")


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


async def run_cleanup(
    config: IntakeConfig,
    dry_run: bool = False,
    force: bool = False,
    notifiers: list[Notifier] | None = None,
) -> RetentionSummary:
    """Run every retention policy of ``config`` once and return the summary."""
    mode = RunMode.DRY_RUN if dry_run else RunMode.APPLIED
    if notifiers is None:
        notifiers = build_notifiers(config)
    sink = ReportingSink(mode, notifiers, threshold_bytes=config.notifications.threshold_bytes)
    engine = RetentionEngine(
        config.retention.policies,
        base_dir=config.paths.base_dir,
        min_free_bytes=config.retention.min_free_bytes,
    )
    logger.info("Cleanup started (%s)", mode.value)
    await engine.run(dry_run=dry_run, force=force, sink=sink)
    return await sink.finalize()


def render_summary(summary: RetentionSummary) -> Table:
    dry_run = summary.mode is RunMode.DRY_RUN
    table = Table(title="Cleanup (dry run)" if dry_run else "Cleanup")
    table.add_column("Directory", style="cyan")
    table.add_column("Would remove" if dry_run else "Removed", justify="right")
    table.add_column("Freed", justify="right")
    table.add_column("Logs rotated", justify="right")
    table.add_column("Errors")
    for report in summary.reports:
        table.add_row(
            report.name,
            str(report.files_removed),
            format_size(report.bytes_freed),
            str(report.logs_rotated),
            "[red]" + "; ".join(report.errors) + "[/red]" if report.errors else "[green]-[/green]",
        )
    table.add_row(
        "[bold]Total[/bold]",
        f"[bold]{summary.files_removed}[/bold]",
        f"[bold]{format_size(summary.bytes_freed)}[/bold]",
        str(sum(report.logs_rotated for report in summary.reports)),
        str(len(summary.errors)),
    )
    return table


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--dry-run", "-d", is_flag=True, help="Show what would be removed without touching any file.")
@click.option("--force", "-f", is_flag=True, help="Clean even when free disk space is below the minimum.")
@click.option("--verbose", "-v", is_flag=True, help="Log every file decision (DEBUG level).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    envvar="QI_CONFIG",
    default=None,
    help="INI configuration file (default: config.ini).",
)
def main(dry_run: bool, force: bool, verbose: bool, config_path: str | None) -> None:
    """Reclaim disk space used by uploads, logs, backups, temp files and caches."""
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(1)

    configure_logging("DEBUG" if verbose else config.logging.level, config.logging.file)
    summary = run_async(run_cleanup(config, dry_run=dry_run, force=force))

    console.print(render_summary(summary))
    if summary.disk is not None:
        console.print(
            f"Disk: {format_size(summary.disk.free_bytes)} free of "
            f"{format_size(summary.disk.total_bytes)} ({summary.disk.percent_free:.1f}%)"
        )
    if summary.notified:
        console.print("[dim]Notification sent.[/dim]")


if __name__ == "__main__":
    main()
