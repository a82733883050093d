"""Read-only inspection commands for the vaultsync CLI.

Commands:
- ignored: List vault files the exclusion rules skip
- records: List sync records in the data directory
- activity: Show the activity ledger
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import click

from vaultsync.cli.config import get_settings_file
from vaultsync.core.config import get_data_dir, load_settings
from vaultsync.core.exclusions import ExclusionEngine, SkipCounts
from vaultsync.sync.engine import LEDGER_DB, RECORDS_DB
from vaultsync.sync.ledger import ActivityLedger
from vaultsync.sync.records import SyncRecordStore


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
@click.argument("vault", type=click.Path(exists=True, file_okay=False, path_type=Path))
def ignored(vault: Path) -> None:
    """List files in VAULT that sync skips, with the reason."""
    exclusions = ExclusionEngine(load_settings(get_settings_file()))
    count = 0
    adjustable = SkipCounts()
    for file in sorted(p for p in vault.rglob("*") if p.is_file()):
        path = file.relative_to(vault).as_posix()
        size = file.stat().st_size
        reason = exclusions.reason(path, size)
        if reason is None:
            continue
        count += 1
        adjustable.add(reason)
        click.echo(f"{path}\t{reason.value}\t{exclusions.describe(path, reason, size)}")
    click.echo(f"{count} ignored files.")
    if adjustable.total:
        click.echo(
            f"{adjustable.total} can be re-enabled in settings "
            f"(folders: {adjustable.excluded_folders}, selective sync: {adjustable.selective_sync}, "
            f"size limit: {adjustable.max_file_size})."
        )


@click.command()
def records() -> None:
    """List sync records."""
    db_path = get_data_dir() / RECORDS_DB
    if not db_path.exists():
        click.echo("No sync records.")
        return
    store = SyncRecordStore(db_path)
    try:
        entries = store.all_records()
        for record in sorted(entries, key=lambda r: r.local_path):
            click.echo(
                f"{record.local_path}\t{record.status.value}\t{record.remote_id}\t"
                f"{_format_time(record.last_synced)}"
            )
        click.echo(f"{len(entries)} records.")
    finally:
        store.close()


@click.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of entries to show.")
def activity(limit: int) -> None:
    """Show recent sync activity, newest first."""
    db_path = get_data_dir() / LEDGER_DB
    if not db_path.exists():
        click.echo("No activity recorded.")
        return
    ledger = ActivityLedger(db_path)
    try:
        for entry in ledger.recent(limit):
            line = f"{_format_time(entry.timestamp)}  {entry.action.value:<9} {entry.path}  {entry.detail}"
            if entry.error:
                line += f" ({entry.error})"
            click.echo(line)
    finally:
        ledger.close()
