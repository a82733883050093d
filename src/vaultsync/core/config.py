"""Configuration classes for vaultsync.

This module provides:
- SelectiveSyncSettings: Per-device category, size and config-file toggles
- SyncSettings: Engine settings injected at construction
- load_settings / save_settings: JSON persistence of SyncSettings
- get_data_dir: Device-local directory for sync state
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from vaultsync.core.types import BinaryStrategy, MarkdownStrategy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = ".obsidian"
DEFAULT_MAX_FILE_SIZE_BYTES = 20 * 1024 * 1024


@dataclass
class SelectiveSyncSettings:
    """Selective-sync toggles for one device.

    Attributes:
        sync_images: Sync image files.
        sync_audio: Sync audio files.
        sync_video: Sync video files.
        sync_pdfs: Sync PDF documents.
        sync_other_types: Sync files outside the known categories.
        max_file_size_bytes: Files strictly larger than this are skipped.
        sync_editor_settings: Sync app.json from the config directory.
        sync_appearance: Sync appearance.json, themes and snippets.
        sync_hotkeys: Sync hotkeys.json.
        sync_community_plugin_list: Sync community-plugins.json.
        sync_core_plugin_settings: Sync core plugin settings files.
        sync_community_plugin_files: Sync community plugin assets.
    """

    sync_images: bool = True
    sync_audio: bool = True
    sync_video: bool = False
    sync_pdfs: bool = True
    sync_other_types: bool = True
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES
    sync_editor_settings: bool = True
    sync_appearance: bool = True
    sync_hotkeys: bool = False
    sync_community_plugin_list: bool = False
    sync_core_plugin_settings: bool = True
    sync_community_plugin_files: bool = True

    def __post_init__(self) -> None:
        """Validate the size ceiling."""
        if self.max_file_size_bytes <= 0:
            raise ValueError("max_file_size_bytes must be positive")


@dataclass
class SyncSettings:
    """Settings injected into the sync engine.

    Attributes:
        config_dir: Name of the vault configuration directory.
        excluded_paths: User-declared folder prefixes to skip.
        selective: Selective-sync toggles.
        pull_interval_seconds: Period of the background pull timer.
        push_quiescence_ms: Idle time before a changed file is queued.
        md_conflict_strategy: Strategy for markdown conflicts.
        binary_conflict_strategy: Strategy for all other conflicts.
        keep_revisions_forever: Ask the remote to pin markdown revisions.
        max_retries: Attempts per queue entry on transient failures.
        retry_initial_backoff: First backoff delay in seconds.
        retry_max_backoff: Upper bound for backoff delays in seconds.
        concurrency_limit: Bound for concurrent I/O fan-out.
        duplicate_cleanup_interval_cycles: Cycles between duplicate cleanups.
        snapshot_retention_days: Age after which merge bases are pruned.
    """

    config_dir: str = DEFAULT_CONFIG_DIR
    excluded_paths: list[str] = field(default_factory=list)
    selective: SelectiveSyncSettings = field(default_factory=SelectiveSyncSettings)
    pull_interval_seconds: float = 30.0
    push_quiescence_ms: int = 2000
    md_conflict_strategy: MarkdownStrategy = MarkdownStrategy.AUTO_MERGE
    binary_conflict_strategy: BinaryStrategy = BinaryStrategy.LAST_MODIFIED_WINS
    keep_revisions_forever: bool = True
    max_retries: int = 5
    retry_initial_backoff: float = 1.0
    retry_max_backoff: float = 60.0
    concurrency_limit: int = 8
    duplicate_cleanup_interval_cycles: int = 20
    snapshot_retention_days: int = 30

    def __post_init__(self) -> None:
        """Normalize enums and paths, validate numeric limits."""
        self.md_conflict_strategy = MarkdownStrategy(self.md_conflict_strategy)
        self.binary_conflict_strategy = BinaryStrategy(self.binary_conflict_strategy)
        self.config_dir = self.config_dir.strip("/") or DEFAULT_CONFIG_DIR
        self.excluded_paths = [p.strip().strip("/") for p in self.excluded_paths if p.strip().strip("/")]
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @property
    def push_quiescence_seconds(self) -> float:
        return self.push_quiescence_ms / 1000.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data = asdict(self)
        data["md_conflict_strategy"] = self.md_conflict_strategy.value
        data["binary_conflict_strategy"] = self.binary_conflict_strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        """Build settings from a dict, ignoring unknown keys.

        Args:
            data: Parsed JSON settings.

        Returns:
            SyncSettings with defaults for missing keys.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        selective = kwargs.pop("selective", None) or {}
        selective_known = {f.name for f in fields(SelectiveSyncSettings)}
        kwargs["selective"] = SelectiveSyncSettings(
            **{k: v for k, v in selective.items() if k in selective_known}
        )
        return cls(**kwargs)


def get_data_dir() -> Path:
    """Get the device-local directory for sync state.

    Honors VAULTSYNC_DATA_DIR when set.

    Returns:
        Path to ~/.vaultsync or the override.
    """
    override = os.environ.get("VAULTSYNC_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".vaultsync"


def load_settings(path: Path) -> SyncSettings:
    """Load settings from a JSON file, falling back to defaults."""
    if not path.exists():
        return SyncSettings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return SyncSettings()
    return SyncSettings.from_dict(data)


def save_settings(path: Path, settings: SyncSettings) -> None:
    """Save settings to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
