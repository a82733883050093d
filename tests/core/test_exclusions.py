"""Tests for selective-sync exclusion rules."""

from __future__ import annotations

import pytest

from vaultsync.core.config import SelectiveSyncSettings, SyncSettings
from vaultsync.core.exclusions import (
    ExclusionEngine,
    SkipCounts,
    describe_exclusion_reason,
    exclusion_reason,
    file_category,
    format_byte_size,
    is_hard_excluded,
    matched_user_exclusion,
    user_adjustable_skip_key,
)
from vaultsync.core.types import ExclusionReason, FileCategory

CONFIG = ".obsidian"


def reason(
    path: str,
    exclusions: tuple[str, ...] = (),
    size: int | None = None,
    **toggles: object,
) -> ExclusionReason | None:
    return exclusion_reason(path, exclusions, SelectiveSyncSettings(**toggles), CONFIG, size)  # type: ignore[arg-type]


class TestHardExclusions:
    """Tests for the non-overridable deny-list."""

    @pytest.mark.parametrize(
        "path",
        [
            ".git/config",
            ".trash/old.md",
            "node_modules/pkg/index.js",
            "notes/.DS_Store",
            "Thumbs.db",
            ".hidden/file.md",
            "notes/.env",
            "a.remote.md",
            "notes/a.sync-conflict-20240101-120000.md",
            ".obsidian/cache/index",
            ".obsidian/workspace.json",
            ".obsidian/workspace-mobile.json",
            ".obsidian/plugins/x/snapshots/1.json",
        ],
    )
    def test_denied_paths(self, path: str) -> None:
        """Each deny-list entry is hard-excluded."""
        assert is_hard_excluded(path, CONFIG)
        assert reason(path) is ExclusionReason.HARD_EXCLUDED

    @pytest.mark.parametrize("path", ["notes/a.md", "notes/.gitkeep.md", "img/photo.png"])
    def test_regular_paths_pass(self, path: str) -> None:
        """Ordinary files, and dot-files with an extension, are not denied."""
        assert not is_hard_excluded(path, CONFIG)

    def test_hard_exclusion_outranks_user_exclusion(self) -> None:
        """hard-excluded wins over every other reason."""
        assert reason("archive/.DS_Store", ("archive",)) is ExclusionReason.HARD_EXCLUDED


class TestUserExclusions:
    """Tests for user-declared folder prefixes."""

    def test_prefix_match(self) -> None:
        """Paths under an excluded folder are excluded."""
        assert reason("archive/2020/a.md", ("archive",)) is ExclusionReason.EXCLUDED_FOLDER
        assert reason("archived.md", ("archive",)) is None

    def test_longest_prefix_is_reported(self) -> None:
        """The most specific matching prefix is reported."""
        assert matched_user_exclusion("a/b/c.md", ["a", "a/b", "x"]) == "a/b"

    def test_prefixes_are_normalized(self) -> None:
        """Leading and trailing slashes do not matter."""
        assert matched_user_exclusion("a/b/c.md", ["/a/b/"]) == "a/b"

    def test_user_exclusion_outranks_type(self) -> None:
        """excluded-folder wins over type-disabled."""
        assert reason("archive/clip.mp4", ("archive",)) is ExclusionReason.EXCLUDED_FOLDER


class TestConfigDirectory:
    """Tests for the configuration-directory allow-list."""

    @pytest.mark.parametrize(
        ("path", "toggle"),
        [
            (".obsidian/app.json", "sync_editor_settings"),
            (".obsidian/appearance.json", "sync_appearance"),
            (".obsidian/themes/Minimal/theme.css", "sync_appearance"),
            (".obsidian/snippets/wide.css", "sync_appearance"),
            (".obsidian/hotkeys.json", "sync_hotkeys"),
            (".obsidian/community-plugins.json", "sync_community_plugin_list"),
            (".obsidian/core-plugins.json", "sync_core_plugin_settings"),
            (".obsidian/daily-notes.json", "sync_core_plugin_settings"),
            (".obsidian/plugins/dataview/main.js", "sync_community_plugin_files"),
            (".obsidian/plugins/dataview/data.json", "sync_community_plugin_files"),
        ],
    )
    def test_each_toggle_gates_its_files(self, path: str, toggle: str) -> None:
        """A disabled toggle makes its files vault-config-disabled."""
        assert reason(path, **{toggle: True}) is None
        assert reason(path, **{toggle: False}) is ExclusionReason.VAULT_CONFIG_DISABLED

    @pytest.mark.parametrize(
        "path",
        [".obsidian/graph.json", ".obsidian/plugins/dataview/cache.db", ".obsidian/plugins/x/y/z.js"],
    )
    def test_unlisted_config_files_are_excluded(self, path: str) -> None:
        """Anything outside the allow-list is vault-config-disabled."""
        assert reason(path) is ExclusionReason.VAULT_CONFIG_DISABLED

    def test_config_files_ignore_type_and_size(self) -> None:
        """Type and size rules do not apply inside the config directory."""
        assert reason(".obsidian/snippets/a.css", size=10**12, sync_other_types=False) is None

    def test_custom_config_dir(self) -> None:
        """The config directory name is a parameter."""
        selective = SelectiveSyncSettings()
        assert exclusion_reason(".config/app.json", (), selective, ".config") is None
        assert exclusion_reason(".obsidian/app.json", (), selective, ".config") is (
            ExclusionReason.HARD_EXCLUDED
        )


class TestTypesAndSize:
    """Tests for category and size rules."""

    @pytest.mark.parametrize(
        ("path", "category"),
        [
            ("a.PNG", FileCategory.IMAGE),
            ("a.mp3", FileCategory.AUDIO),
            ("a.mkv", FileCategory.VIDEO),
            ("a.pdf", FileCategory.PDF),
            ("a.md", FileCategory.OTHER),
            ("Makefile", FileCategory.OTHER),
        ],
    )
    def test_file_category(self, path: str, category: FileCategory) -> None:
        """Categories come from the extension table, case-insensitively."""
        assert file_category(path) is category

    def test_video_disabled_by_default(self) -> None:
        """Video sync is off unless enabled."""
        assert reason("clip.mp4") is ExclusionReason.TYPE_DISABLED
        assert reason("clip.mp4", sync_video=True) is None

    def test_other_types_toggle_covers_markdown(self) -> None:
        """Disabling other types also skips notes."""
        assert reason("a.md", sync_other_types=False) is ExclusionReason.TYPE_DISABLED

    def test_size_ceiling_is_strict(self) -> None:
        """Only files strictly above the ceiling are too large."""
        assert reason("a.pdf", size=100, max_file_size_bytes=100) is None
        assert reason("a.pdf", size=101, max_file_size_bytes=100) is ExclusionReason.FILE_TOO_LARGE
        assert reason("a.pdf", size=None, max_file_size_bytes=100) is None

    def test_type_outranks_size(self) -> None:
        """type-disabled is reported before file-too-large."""
        assert reason("clip.mp4", size=10**12) is ExclusionReason.TYPE_DISABLED

    def test_verdicts_are_deterministic(self) -> None:
        """Repeated evaluation gives the same answer."""
        verdicts = {reason("notes/a.md", ("x",), 5) for _ in range(10)}
        assert verdicts == {None}


class TestDescriptions:
    """Tests for human-readable descriptions."""

    def test_size_description(self) -> None:
        """Too-large files quote both sizes."""
        selective = SelectiveSyncSettings(max_file_size_bytes=20 * 1024 * 1024)
        text = describe_exclusion_reason(
            "big.pdf", ExclusionReason.FILE_TOO_LARGE, CONFIG, selective=selective, size=30 * 1024 * 1024
        )
        assert text == "File size is 30.0 MB and exceeds the max file size of 20.0 MB."

    def test_folder_description(self) -> None:
        """Excluded-folder descriptions name the folder."""
        text = describe_exclusion_reason(
            "a/b.md", ExclusionReason.EXCLUDED_FOLDER, CONFIG, user_exclusions=["a"]
        )
        assert text == 'Path matches excluded folder "a".'

    def test_config_description_names_toggle(self) -> None:
        """Config descriptions name the toggle that gates the file."""
        text = describe_exclusion_reason(
            ".obsidian/hotkeys.json", ExclusionReason.VAULT_CONFIG_DISABLED, CONFIG
        )
        assert "Sync hotkeys" in text

    def test_type_description(self) -> None:
        """Type descriptions mention the extension."""
        text = describe_exclusion_reason("clip.mp4", ExclusionReason.TYPE_DISABLED, CONFIG)
        assert text == "Video file type (.mp4) is disabled by Sync video."

    def test_format_byte_size(self) -> None:
        """Sizes use binary units."""
        assert format_byte_size(0) == "0 B"
        assert format_byte_size(512) == "512 B"
        assert format_byte_size(1536) == "1.5 KB"


class TestSkipCounts:
    """Tests for user-adjustable skip tallies."""

    def test_hard_exclusions_are_not_adjustable(self) -> None:
        """Only reasons a user can change are counted."""
        assert user_adjustable_skip_key(ExclusionReason.HARD_EXCLUDED) is None

        counts = SkipCounts()
        for item in (
            ExclusionReason.HARD_EXCLUDED,
            ExclusionReason.EXCLUDED_FOLDER,
            ExclusionReason.TYPE_DISABLED,
            ExclusionReason.VAULT_CONFIG_DISABLED,
            ExclusionReason.FILE_TOO_LARGE,
        ):
            counts.add(item)

        assert (counts.excluded_folders, counts.selective_sync, counts.max_file_size) == (1, 2, 1)
        assert counts.total == 4


class TestExclusionEngine:
    """Tests for the settings-bound wrapper."""

    def test_engine_applies_settings(self) -> None:
        """The engine evaluates with its own settings."""
        engine = ExclusionEngine(SyncSettings(excluded_paths=["private"]))

        assert engine.is_excluded("private/a.md")
        assert not engine.is_excluded("public/a.md")
        assert engine.capture({"private/a.md": 1, "b.md": 1}) == {
            "private/a.md": ExclusionReason.EXCLUDED_FOLDER,
            "b.md": None,
        }
