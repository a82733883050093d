"""Configuration commands and helpers for the vaultsync CLI.

Commands:
- config show: Print the effective settings as JSON
- config set: Change one setting (dotted keys for selective toggles)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from vaultsync.core.config import SyncSettings, get_data_dir, load_settings, save_settings

SETTINGS_FILE = "settings.json"


def get_settings_file() -> Path:
    """Get the path to the settings file in the data directory."""
    return get_data_dir() / SETTINGS_FILE


def parse_value(raw: str) -> Any:
    """Parse a command-line value as JSON, falling back to the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def apply_setting(settings: SyncSettings, key: str, raw_value: str) -> SyncSettings:
    """Return new settings with one key changed.

    Args:
        settings: Current settings.
        key: Field name, or `selective.<field>` for selective toggles.
        raw_value: Value as typed; JSON literals are decoded.

    Returns:
        Validated settings.

    Raises:
        KeyError: Unknown setting.
        ValueError: Value rejected by validation.
    """
    data = settings.to_dict()
    value = parse_value(raw_value)
    section, _, name = key.partition(".")
    if name:
        if section != "selective" or name not in data["selective"]:
            raise KeyError(key)
        data["selective"][name] = value
    else:
        if key not in data or key == "selective":
            raise KeyError(key)
        data[key] = value
    return SyncSettings.from_dict(data)


@click.group()
def config() -> None:
    """Show or change sync settings."""


@config.command("show")
def show() -> None:
    """Print the effective settings."""
    settings = load_settings(get_settings_file())
    click.echo(json.dumps(settings.to_dict(), indent=2))


@config.command("set")
@click.argument("key")
@click.argument("value")
def set_value(key: str, value: str) -> None:
    """Set KEY to VALUE.

    Use `selective.<toggle>` for selective-sync toggles, e.g.
    `vaultsync config set selective.sync_video true`.
    """
    settings_file = get_settings_file()
    settings = load_settings(settings_file)
    try:
        updated = apply_setting(settings, key, value)
    except KeyError:
        raise click.BadParameter(f"Unknown setting: {key}", param_hint="KEY") from None
    except (TypeError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint="VALUE") from e
    save_settings(settings_file, updated)
    click.echo(f"{key} updated.")
