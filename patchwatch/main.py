"""Main application entry point."""

import asyncio
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from .core.config import settings
from .core.config_validation import run_config_checks
from .console import EXIT_EMERGENCY, PatchConsole
from .services.az_cli_service import az_cli_service

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Send log records to the configured file so they stay off the dashboard."""

    handlers = None
    if settings.log_file:
        handlers = [logging.FileHandler(settings.log_file, encoding="utf-8")]
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def _apply_overrides(
    refresh_interval: Optional[int],
    concurrency: Optional[int],
    os_type: Optional[str],
    debug: bool,
) -> None:
    if refresh_interval is not None:
        settings.refresh_interval_seconds = refresh_interval
    if concurrency is not None:
        settings.dispatch_concurrency = concurrency
    if os_type is not None:
        settings.os_type = os_type
    if debug:
        settings.debug = True


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--refresh-interval",
    type=click.IntRange(min=1),
    default=None,
    help="Seconds between live dashboard refreshes (default 30).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum remediation commands in flight (default 10).",
)
@click.option(
    "--os-type",
    default=None,
    help="OS family for pending and unassessed queries; empty for all.",
)
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
@click.version_option(package_name="patchwatch")
def main(
    refresh_interval: Optional[int],
    concurrency: Optional[int],
    os_type: Optional[str],
    debug: bool,
) -> None:
    """Monitor and bulk-remediate Azure VM patching from the terminal."""

    _apply_overrides(refresh_interval, concurrency, os_type, debug)
    configure_logging()
    console = Console(stderr=True)

    logger.info("Starting %s", settings.app_name)
    logger.info("Debug mode: %s", settings.debug)

    config_result = run_config_checks(force=True)
    for issue in config_result.warnings:
        logger.warning("Configuration warning: %s", issue.message)
        console.print(f"[yellow]Warning:[/yellow] {escape(issue.message)}")
        if issue.hint:
            console.print(f"  [dim]{escape(issue.hint)}[/dim]")
    if config_result.has_errors:
        for issue in config_result.errors:
            logger.error("Configuration error: %s", issue.message)
            console.print(f"[red]Error:[/red] {escape(issue.message)}")
            if issue.hint:
                console.print(f"  [dim]{escape(issue.hint)}[/dim]")
        sys.exit(EXIT_EMERGENCY)

    problems = az_cli_service.preflight()
    if problems:
        for problem in problems:
            logger.error("Preflight check failed: %s", problem)
            console.print(f"[red]Error:[/red] {escape(problem)}")
        sys.exit(EXIT_EMERGENCY)

    exit_code = asyncio.run(PatchConsole().run())
    logger.info("Exiting with code %d", exit_code)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
