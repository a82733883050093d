"""Selective-sync exclusion rules.

This module provides:
- exclusion_reason: Decide whether a vault path participates in sync
- file_category: Map a path to its selective-sync category
- describe_exclusion_reason: Human-readable explanation of a verdict
- user_adjustable_skip_key / SkipCounts: Tally skips a user can undo
- ExclusionEngine: Settings-bound wrapper used by the sync engine

All functions are pure: the same inputs always yield the same verdict, so
a path can be re-evaluated at any time during a scan.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from vaultsync.core.artifacts import is_generated_artifact_path, normalize_path
from vaultsync.core.config import SelectiveSyncSettings, SyncSettings
from vaultsync.core.types import ExclusionReason, FileCategory

IMAGE_EXTENSIONS = frozenset(
    {"png", "jpg", "jpeg", "gif", "webp", "bmp", "svg", "heic", "heif", "tif", "tiff"}
)
AUDIO_EXTENSIONS = frozenset({"mp3", "wav", "m4a", "aac", "ogg", "flac", "opus"})
VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "mkv", "webm", "avi", "m4v"})

CORE_PLUGIN_SETTINGS_FILES = frozenset(
    {"core-plugins.json", "daily-notes.json", "templates.json", "types.json", "zk-prefixer.json"}
)
COMMUNITY_PLUGIN_SYNC_FILES = frozenset({"manifest.json", "data.json", "styles.css", "main.js"})

ROOT_DENY_DIRS = (".git", ".trash", "node_modules")
OS_ARTIFACT_NAMES = frozenset({".ds_store", "thumbs.db"})

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def _normalize_prefix(value: str) -> str:
    return normalize_path(value).rstrip("/")


def _extension(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot < 0:
        return ""
    return name[dot + 1 :].lower()


def _within(path: str, directory: str) -> bool:
    return path == directory or path.startswith(f"{directory}/")


def format_byte_size(size: float) -> str:
    """Format a byte count with binary units, e.g. `20.0 MB`."""
    if size <= 0:
        return "0 B"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    decimals = 0 if unit == 0 else 1
    return f"{value:.{decimals}f} {SIZE_UNITS[unit]}"


def file_category(path: str) -> FileCategory:
    """Classify a path by its extension."""
    ext = _extension(path)
    if ext in IMAGE_EXTENSIONS:
        return FileCategory.IMAGE
    if ext in AUDIO_EXTENSIONS:
        return FileCategory.AUDIO
    if ext in VIDEO_EXTENSIONS:
        return FileCategory.VIDEO
    if ext == "pdf":
        return FileCategory.PDF
    return FileCategory.OTHER


def _is_community_plugin_asset(relative: str) -> bool:
    segments = relative.split("/")
    return (
        len(segments) == 3
        and segments[0] == "plugins"
        and bool(segments[1])
        and segments[2] in COMMUNITY_PLUGIN_SYNC_FILES
    )


def _config_toggle(relative: str) -> str | None:
    """Name of the setting that gates a config-directory path, if allow-listed."""
    if relative == "app.json":
        return "sync_editor_settings"
    if relative == "appearance.json":
        return "sync_appearance"
    if relative == "hotkeys.json":
        return "sync_hotkeys"
    if relative == "community-plugins.json":
        return "sync_community_plugin_list"
    if relative in CORE_PLUGIN_SETTINGS_FILES:
        return "sync_core_plugin_settings"
    if _is_community_plugin_asset(relative):
        return "sync_community_plugin_files"
    if relative.startswith(("themes/", "snippets/")):
        return "sync_appearance"
    return None


def is_hard_excluded(path: str, config_dir: str) -> bool:
    """Check the non-overridable deny-list.

    Args:
        path: Vault-relative path.
        config_dir: Name of the vault configuration directory.

    Returns:
        True for generated variants, OS artifacts, repository and trash
        folders, internal cache/workspace files and dot-paths outside the
        configuration directory.
    """
    normalized = normalize_path(path)
    lower = normalized.lower()
    config = _normalize_prefix(config_dir)
    config_lower = config.lower()

    if is_generated_artifact_path(normalized):
        return True

    if lower.rsplit("/", 1)[-1] in OS_ARTIFACT_NAMES:
        return True

    if any(_within(lower, name) for name in ROOT_DENY_DIRS):
        return True

    if _within(lower, f"{config_lower}/cache"):
        return True
    if lower in (f"{config_lower}/workspace.json", f"{config_lower}/workspace-mobile.json"):
        return True
    if "/plugins/" in lower and "/snapshots/" in lower:
        return True

    segments = normalized.split("/")
    config_segments = config.split("/")
    in_config = _within(normalized, config)
    last = len(segments) - 1
    for index, segment in enumerate(segments):
        if not segment.startswith("."):
            continue
        if in_config and index < len(config_segments) and segment == config_segments[index]:
            continue
        if segment in (".", ".."):
            continue
        # A dot-file is allowed only as the final segment with a real extension.
        if index < last or "." not in segment[1:]:
            return True

    return False


def matched_user_exclusion(path: str, user_exclusions: Iterable[str]) -> str | None:
    """Return the longest user exclusion prefix that matches the path."""
    normalized = normalize_path(path)
    best = ""
    for exclusion in user_exclusions:
        prefix = _normalize_prefix(exclusion)
        if prefix and _within(normalized, prefix) and len(prefix) > len(best):
            best = prefix
    return best or None


def _type_disabled(category: FileCategory, selective: SelectiveSyncSettings) -> bool:
    enabled = {
        FileCategory.IMAGE: selective.sync_images,
        FileCategory.AUDIO: selective.sync_audio,
        FileCategory.VIDEO: selective.sync_video,
        FileCategory.PDF: selective.sync_pdfs,
        FileCategory.OTHER: selective.sync_other_types,
    }
    return not enabled[category]


def exclusion_reason(
    path: str,
    user_exclusions: Sequence[str],
    selective: SelectiveSyncSettings,
    config_dir: str,
    size: int | None = None,
) -> ExclusionReason | None:
    """Decide whether a path participates in sync.

    Rules are evaluated in fixed priority order and the first match wins:
    hard-excluded, excluded-folder, vault-config-disabled, type-disabled,
    file-too-large.

    Args:
        path: Vault-relative path.
        user_exclusions: User-declared folder prefixes.
        selective: Selective-sync toggles.
        config_dir: Name of the vault configuration directory.
        size: File size in bytes, if known.

    Returns:
        None when the path is included, otherwise the reason it is not.
    """
    normalized = normalize_path(path)
    config = _normalize_prefix(config_dir)

    if is_hard_excluded(normalized, config):
        return ExclusionReason.HARD_EXCLUDED
    if matched_user_exclusion(normalized, user_exclusions) is not None:
        return ExclusionReason.EXCLUDED_FOLDER
    if _within(normalized, config):
        toggle = _config_toggle(normalized[len(config) + 1 :])
        if toggle is None or not getattr(selective, toggle):
            return ExclusionReason.VAULT_CONFIG_DISABLED
        return None
    if _type_disabled(file_category(normalized), selective):
        return ExclusionReason.TYPE_DISABLED
    if size is not None and size > 0 and size > selective.max_file_size_bytes:
        return ExclusionReason.FILE_TOO_LARGE
    return None


_TOGGLE_LABELS = {
    "sync_editor_settings": "Sync editor settings",
    "sync_appearance": "Sync appearance",
    "sync_hotkeys": "Sync hotkeys",
    "sync_community_plugin_list": "Sync community plugin list",
    "sync_core_plugin_settings": "Sync core plugin settings",
    "sync_community_plugin_files": "Sync community plugin files",
}

_CATEGORY_LABELS = {
    FileCategory.IMAGE: ("Image", "Sync images"),
    FileCategory.AUDIO: ("Audio", "Sync audio"),
    FileCategory.VIDEO: ("Video", "Sync video"),
}


def describe_exclusion_reason(
    path: str,
    reason: ExclusionReason,
    config_dir: str,
    user_exclusions: Sequence[str] = (),
    selective: SelectiveSyncSettings | None = None,
    size: int | None = None,
) -> str:
    """Explain an exclusion verdict in a sentence.

    Args:
        path: Vault-relative path.
        reason: Verdict returned by exclusion_reason.
        config_dir: Name of the vault configuration directory.
        user_exclusions: User exclusions, to name the matched folder.
        selective: Settings, to quote the size ceiling.
        size: File size in bytes, if known.

    Returns:
        Description suitable for a debug listing.
    """
    normalized = normalize_path(path)
    if reason is ExclusionReason.HARD_EXCLUDED:
        return "Path is always excluded from sync."

    if reason is ExclusionReason.EXCLUDED_FOLDER:
        matched = matched_user_exclusion(normalized, user_exclusions)
        if matched:
            return f'Path matches excluded folder "{matched}".'
        return "Path matches an excluded folder rule."

    if reason is ExclusionReason.FILE_TOO_LARGE:
        limit = selective.max_file_size_bytes if selective else None
        if size and size > 0 and limit:
            return (
                f"File size is {format_byte_size(size)} and exceeds the max file size "
                f"of {format_byte_size(limit)}."
            )
        if limit:
            return f"File is larger than the max file size setting ({format_byte_size(limit)})."
        return "File is larger than the max file size setting."

    if reason is ExclusionReason.TYPE_DISABLED:
        category = file_category(normalized)
        ext = _extension(normalized)
        if category in _CATEGORY_LABELS:
            kind, toggle = _CATEGORY_LABELS[category]
            if ext:
                return f"{kind} file type (.{ext}) is disabled by {toggle}."
            return f"{kind} file sync is disabled by {toggle}."
        if category is FileCategory.PDF:
            return "PDF files are disabled by Sync PDF files."
        if ext:
            return f"File type (.{ext}) is disabled by Sync other file types."
        return "Files without a known media type are disabled by Sync other file types."

    config = _normalize_prefix(config_dir)
    relative = normalized[len(config) + 1 :] if _within(normalized, config) else ""
    toggle = _config_toggle(relative) if relative else None
    if toggle is None:
        return f'Vault config path "{normalized}" is disabled by vault configuration sync settings.'
    noun = "path" if relative.startswith(("themes/", "snippets/")) else "file"
    return f'Vault config {noun} "{normalized}" is disabled by {_TOGGLE_LABELS[toggle]}.'


def user_adjustable_skip_key(reason: ExclusionReason) -> str | None:
    """Map a verdict to the skip counter a user can change, or None."""
    if reason is ExclusionReason.EXCLUDED_FOLDER:
        return "excluded_folders"
    if reason is ExclusionReason.FILE_TOO_LARGE:
        return "max_file_size"
    if reason in (ExclusionReason.TYPE_DISABLED, ExclusionReason.VAULT_CONFIG_DISABLED):
        return "selective_sync"
    return None


@dataclass
class SkipCounts:
    """Files skipped for reasons the user can adjust in settings."""

    selective_sync: int = 0
    max_file_size: int = 0
    excluded_folders: int = 0

    def add(self, reason: ExclusionReason) -> None:
        key = user_adjustable_skip_key(reason)
        if key is not None:
            setattr(self, key, getattr(self, key) + 1)

    @property
    def total(self) -> int:
        return self.selective_sync + self.max_file_size + self.excluded_folders


class ExclusionEngine:
    """Exclusion rules bound to one set of settings.

    Example:
        engine = ExclusionEngine(settings)
        if engine.reason("notes/a.md") is None:
            ...
    """

    def __init__(self, settings: SyncSettings) -> None:
        self._config_dir = settings.config_dir
        self._user_exclusions = tuple(settings.excluded_paths)
        self._selective = settings.selective

    @property
    def config_dir(self) -> str:
        return self._config_dir

    def reason(self, path: str, size: int | None = None) -> ExclusionReason | None:
        return exclusion_reason(
            path, self._user_exclusions, self._selective, self._config_dir, size
        )

    def is_excluded(self, path: str, size: int | None = None) -> bool:
        return self.reason(path, size) is not None

    def describe(self, path: str, reason: ExclusionReason, size: int | None = None) -> str:
        return describe_exclusion_reason(
            path, reason, self._config_dir, self._user_exclusions, self._selective, size
        )

    def capture(self, sizes: dict[str, int | None]) -> dict[str, ExclusionReason | None]:
        """Snapshot verdicts for a set of paths.

        Args:
            sizes: Mapping of path to size in bytes.

        Returns:
            Mapping of path to verdict.
        """
        return {path: self.reason(path, size) for path, size in sizes.items()}
