"""Conflict marker commands for the vaultsync CLI.

Commands:
- check-markers: Report conflict blocks in a file
- resolve-markers: Keep one side of every conflict block
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from vaultsync.core.markers import ConflictMarkerError, analyze, resolve
from vaultsync.core.types import MarkerStrategy


@click.command("check-markers")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def check_markers(file: Path) -> None:
    """Report conflict markers in FILE.

    Exits with status 1 when the markers are unbalanced.
    """
    analysis = analyze(file.read_text(encoding="utf-8"))
    if not analysis.has_conflict_markers:
        click.echo("No conflict markers.")
        return

    click.echo(f"Conflict blocks: {analysis.conflict_count}")
    if analysis.first_marker_line is not None:
        click.echo(f"First marker on line {analysis.first_marker_line}")
    if analysis.has_unbalanced_markers:
        click.echo("Error: conflict markers are unbalanced.", err=True)
        sys.exit(1)


@click.command("resolve-markers")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--strategy",
    "-s",
    type=click.Choice([s.value for s in MarkerStrategy]),
    default=MarkerStrategy.LOCAL_FIRST.value,
    show_default=True,
    help="Which side of each block to keep.",
)
@click.option("--in-place", "-i", is_flag=True, help="Rewrite FILE instead of printing.")
def resolve_markers(file: Path, strategy: str, in_place: bool) -> None:
    """Resolve every conflict block in FILE by keeping one side."""
    try:
        result = resolve(file.read_text(encoding="utf-8"), strategy)
    except ConflictMarkerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if in_place:
        file.write_text(result.content, encoding="utf-8")
        click.echo(f"Resolved {result.resolved_count} conflict blocks in {file}.")
    else:
        click.echo(result.content, nl=False)
