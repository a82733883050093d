"""Command-line interface for vaultsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- check-markers: Report conflict markers in a file
- resolve-markers: Resolve conflict markers by keeping one side
- ignored: List vault files skipped by the exclusion rules
- records: List sync records
- activity: Show the activity ledger
- config: Show or change settings
"""

from __future__ import annotations

import logging

import click

from vaultsync.cli.config import config, get_settings_file
from vaultsync.cli.inspect import activity, ignored, records
from vaultsync.cli.markers import check_markers, resolve_markers


@click.group()
@click.version_option(package_name="vaultsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """vaultsync - Bidirectional vault sync tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Conflict marker commands
cli.add_command(check_markers)
cli.add_command(resolve_markers)

# Inspection commands
cli.add_command(ignored)
cli.add_command(records)
cli.add_command(activity)

# Settings
cli.add_command(config)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_settings_file",
]
