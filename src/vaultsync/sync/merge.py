"""Text and JSON merging.

This module provides:
- three_way_merge: Line-based merge of two edits against a common base
- deep_merge_json: Recursive merge of two JSON documents, local wins

The line merge is delegated to merge3. Overlapping hunks are emitted as
LOCAL/REMOTE conflict marker blocks that the marker codec can later
resolve.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import merge3

from vaultsync.core.markers import LOCAL_LABEL, REMOTE_LABEL
from vaultsync.sync.types import ConflictRegion, MergeResult

logger = logging.getLogger(__name__)


def _terminated(lines: list[str]) -> list[str]:
    """Ensure the last line ends with a newline so a marker can follow it."""
    if lines and not lines[-1].endswith("\n"):
        return [*lines[:-1], lines[-1] + "\n"]
    return lines


def three_way_merge(base: str, local: str, remote: str) -> MergeResult:
    """Merge local and remote edits of the same text.

    Args:
        base: Common ancestor (last synced text).
        local: Current local text.
        remote: Current remote text.

    Returns:
        MergeResult; has_conflicts is set when hunks overlap, in which case
        content carries one marker block per overlapping hunk.
    """
    if local == remote:
        return MergeResult(content=local)
    if local == base:
        return MergeResult(content=remote)
    if remote == base:
        return MergeResult(content=local)

    base_lines = base.splitlines(True)
    local_lines = local.splitlines(True)
    remote_lines = remote.splitlines(True)
    merger = merge3.Merge3(base_lines, local_lines, remote_lines)

    output: list[str] = []
    regions: list[ConflictRegion] = []
    for region in merger.merge_regions():
        kind = region[0]
        if kind == "unchanged":
            output.extend(base_lines[region[1] : region[2]])
        elif kind in ("same", "a"):
            output.extend(local_lines[region[1] : region[2]])
        elif kind == "b":
            output.extend(remote_lines[region[1] : region[2]])
        elif kind == "conflict":
            local_part = local_lines[region[3] : region[4]]
            remote_part = remote_lines[region[5] : region[6]]
            output[:] = _terminated(output)
            start_line = len(output) + 1
            block = [
                f"<<<<<<< {LOCAL_LABEL}\n",
                *_terminated(local_part),
                "=======\n",
                *_terminated(remote_part),
                f">>>>>>> {REMOTE_LABEL}\n",
            ]
            output.extend(block)
            regions.append(
                ConflictRegion(
                    start_line=start_line,
                    end_line=start_line + len(block) - 1,
                    local_text="".join(local_part),
                    remote_text="".join(remote_part),
                )
            )
        else:
            raise ValueError(f"Unknown merge region type: {kind}")

    content = "".join(output)
    if regions:
        logger.debug(f"Three-way merge left {len(regions)} conflicting hunks")
    return MergeResult(
        content=content,
        has_conflicts=bool(regions),
        conflict_count=len(regions),
        regions=tuple(regions),
    )


def _merge_value(remote: Any, local: Any) -> Any:
    if isinstance(remote, dict) and isinstance(local, dict):
        merged = dict(remote)
        for key, local_child in local.items():
            merged[key] = _merge_value(remote.get(key), local_child) if key in remote else local_child
        return merged
    return local


def deep_merge_json(local: str, remote: str) -> str | None:
    """Merge two JSON documents.

    Objects merge key by key; for any other value, including arrays, the
    local side wins. Keys present only remotely are kept.

    Args:
        local: Local JSON text.
        remote: Remote JSON text.

    Returns:
        Pretty-printed merged JSON with a trailing newline, or None if
        either side is not valid JSON.
    """
    try:
        local_value = json.loads(local)
        remote_value = json.loads(remote)
    except json.JSONDecodeError:
        return None
    return json.dumps(_merge_value(remote_value, local_value), indent=2) + "\n"
