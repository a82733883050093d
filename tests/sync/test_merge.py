"""Tests for three-way text merge and JSON deep merge."""

from __future__ import annotations

import json

from vaultsync.core.markers import analyze
from vaultsync.sync.merge import deep_merge_json, three_way_merge

BASE = "alpha\nbeta\ngamma\ndelta\nepsilon\n"


class TestThreeWayMerge:
    """Tests for three_way_merge."""

    def test_one_sided_changes_take_the_changed_side(self) -> None:
        """If only one side changed, that side is the result."""
        edited = BASE.replace("beta", "BETA")

        assert three_way_merge(BASE, edited, BASE).content == edited
        assert three_way_merge(BASE, BASE, edited).content == edited

    def test_identical_edits(self) -> None:
        """Both sides making the same edit is not a conflict."""
        edited = BASE.replace("beta", "BETA")

        result = three_way_merge(BASE, edited, edited)

        assert result.content == edited
        assert not result.has_conflicts

    def test_disjoint_edits_combine(self) -> None:
        """Edits in separate regions both survive."""
        local = BASE.replace("alpha", "ALPHA")
        remote = BASE.replace("epsilon", "EPSILON")

        result = three_way_merge(BASE, local, remote)

        assert not result.has_conflicts
        assert result.content == "ALPHA\nbeta\ngamma\ndelta\nEPSILON\n"

    def test_overlapping_edits_produce_markers(self) -> None:
        """Overlapping edits yield one marker block with both sides."""
        local = BASE.replace("gamma", "local gamma")
        remote = BASE.replace("gamma", "remote gamma")

        result = three_way_merge(BASE, local, remote)

        assert result.has_conflicts
        assert result.conflict_count == 1
        assert result.content == (
            "alpha\nbeta\n"
            "<<<<<<< LOCAL\nlocal gamma\n=======\nremote gamma\n>>>>>>> REMOTE\n"
            "delta\nepsilon\n"
        )
        region = result.regions[0]
        assert (region.start_line, region.end_line) == (3, 7)
        assert region.local_text == "local gamma\n"
        assert region.remote_text == "remote gamma\n"
        assert analyze(result.content).conflict_count == 1

    def test_missing_trailing_newline_keeps_markers_on_own_lines(self) -> None:
        """Marker lines never get glued to unterminated content."""
        result = three_way_merge("a\nb", "a\nlocal", "a\nremote")

        assert result.has_conflicts
        analysis = analyze(result.content)
        assert analysis.conflict_count == 1
        assert not analysis.has_unbalanced_markers

    def test_empty_base_conflicts_on_different_content(self) -> None:
        """Two unrelated files merged against an empty base conflict."""
        result = three_way_merge("", "local\n", "remote\n")

        assert result.has_conflicts
        assert "local" in result.content
        assert "remote" in result.content


class TestDeepMergeJson:
    """Tests for deep_merge_json."""

    def test_objects_merge_recursively(self) -> None:
        """Nested keys from both sides are kept; local wins on scalar clashes."""
        local = json.dumps({"theme": "dark", "editor": {"vim": True}})
        remote = json.dumps({"theme": "light", "editor": {"spellcheck": False}, "extra": 1})

        merged = deep_merge_json(local, remote)

        assert merged is not None
        assert merged.endswith("\n")
        assert json.loads(merged) == {
            "theme": "dark",
            "editor": {"vim": True, "spellcheck": False},
            "extra": 1,
        }

    def test_arrays_are_not_merged(self) -> None:
        """Arrays are taken from the local side whole."""
        merged = deep_merge_json('{"plugins": ["a"]}', '{"plugins": ["b", "c"]}')

        assert merged is not None
        assert json.loads(merged) == {"plugins": ["a"]}

    def test_invalid_json_returns_none(self) -> None:
        """Unparseable input on either side gives None."""
        assert deep_merge_json("{", "{}") is None
        assert deep_merge_json("{}", "not json") is None
