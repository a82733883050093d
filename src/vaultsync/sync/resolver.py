"""Conflict resolution strategies.

This module provides:
- is_conflict: Both sides changed since the last sync
- ConflictOutcome: What the engine must write locally and remotely
- ConflictResolver: Routes a conflict to the resolver for its file kind

Routing:
- JSON files under the vault configuration directory: deep merge
- Markdown notes: one resolver per MarkdownStrategy
- Everything else: one resolver per BinaryStrategy

Resolvers are pure: they decide, the engine performs the I/O. Each
strategy table must cover its enum; this is checked at import time.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from vaultsync.core.artifacts import conflict_file_path, normalize_path, pre_merge_paths
from vaultsync.core.types import ActivityAction, BinaryStrategy, MarkdownStrategy, RecordStatus
from vaultsync.sync.merge import deep_merge_json, three_way_merge
from vaultsync.sync.snapshots import SnapshotStore
from vaultsync.sync.types import ConflictInfo, MergeResult

logger = logging.getLogger(__name__)

TEXT_ENCODING = "utf-8"
TEXT_ERRORS = "surrogateescape"


def is_conflict(local_hash: str, remote_hash: str, base_hash: str | None) -> bool:
    """True when both sides differ from the last synced content."""
    return local_hash != base_hash and remote_hash != base_hash


def is_markdown_path(path: str) -> bool:
    return normalize_path(path).lower().endswith(".md")


def is_config_json_path(path: str, config_dir: str) -> bool:
    normalized = normalize_path(path)
    return normalized.startswith(f"{config_dir.strip('/')}/") and normalized.lower().endswith(".json")


def _decode(content: bytes) -> str:
    return content.decode(TEXT_ENCODING, errors=TEXT_ERRORS)


def _encode(text: str) -> bytes:
    return text.encode(TEXT_ENCODING, errors=TEXT_ERRORS)


@dataclass(frozen=True)
class ConflictOutcome:
    """Decision for one conflict.

    Attributes:
        strategy: Name of the strategy that produced the outcome.
        status: Record status after applying the outcome.
        action: Ledger action to log.
        detail: Ledger detail to log.
        local_content: Bytes to write at the conflicted path, or None to
            leave the local file alone.
        upload_content: Bytes to upload over the remote file, or None to
            leave the remote file alone.
        conflict_file: (path, bytes) of a sibling copy to write locally.
        merge: Merge result when a text merge was attempted.
    """

    strategy: str
    status: RecordStatus
    action: ActivityAction
    detail: str
    local_content: bytes | None = None
    upload_content: bytes | None = None
    conflict_file: tuple[str, bytes] | None = None
    merge: MergeResult | None = None


def _local_wins(conflict: ConflictInfo, detail: str, strategy: str) -> ConflictOutcome:
    return ConflictOutcome(
        strategy=strategy,
        status=RecordStatus.SYNCED,
        action=ActivityAction.CONFLICT,
        detail=detail,
        upload_content=conflict.local_content,
    )


def _remote_wins(conflict: ConflictInfo, detail: str, strategy: str) -> ConflictOutcome:
    return ConflictOutcome(
        strategy=strategy,
        status=RecordStatus.SYNCED,
        action=ActivityAction.CONFLICT,
        detail=detail,
        local_content=conflict.remote_content,
    )


def _keep_both(conflict: ConflictInfo, now: datetime, strategy: str) -> ConflictOutcome:
    sibling = conflict_file_path(conflict.path, now)
    return ConflictOutcome(
        strategy=strategy,
        status=RecordStatus.SYNCED,
        action=ActivityAction.CONFLICT,
        detail=(
            f"Conflict file {sibling} created and local version kept. "
            f"Local={conflict.local_hash[:8]} Remote={conflict.remote_hash[:8]}."
        ),
        upload_content=conflict.local_content,
        conflict_file=(sibling, conflict.remote_content),
    )


# =============================================================================
# Markdown resolvers
# =============================================================================


def _md_auto_merge(conflict: ConflictInfo, base: str | None, now: datetime) -> ConflictOutcome:
    result = three_way_merge(
        base if base is not None else "",
        _decode(conflict.local_content),
        _decode(conflict.remote_content),
    )
    merged = _encode(result.content)
    if not result.has_conflicts:
        return ConflictOutcome(
            strategy=MarkdownStrategy.AUTO_MERGE.value,
            status=RecordStatus.SYNCED,
            action=ActivityAction.MERGED,
            detail="Merged automatically.",
            local_content=merged,
            upload_content=merged,
            merge=result,
        )
    return ConflictOutcome(
        strategy=MarkdownStrategy.AUTO_MERGE.value,
        status=RecordStatus.CONFLICT,
        action=ActivityAction.CONFLICT,
        detail=(
            f"Merged with {result.conflict_count} inline conflict "
            f"block{'s' if result.conflict_count != 1 else ''}; resolve manually."
        ),
        local_content=merged,
        merge=result,
    )


def _md_conflict_file(conflict: ConflictInfo, base: str | None, now: datetime) -> ConflictOutcome:
    return _keep_both(conflict, now, MarkdownStrategy.CONFLICT_FILE.value)


def _md_local_wins(conflict: ConflictInfo, base: str | None, now: datetime) -> ConflictOutcome:
    return _local_wins(conflict, "Local version kept.", MarkdownStrategy.LOCAL_WINS.value)


def _md_remote_wins(conflict: ConflictInfo, base: str | None, now: datetime) -> ConflictOutcome:
    return _remote_wins(conflict, "Remote version kept.", MarkdownStrategy.REMOTE_WINS.value)


# =============================================================================
# Binary resolvers
# =============================================================================


def _bin_last_modified_wins(conflict: ConflictInfo, base: str | None, now: datetime) -> ConflictOutcome:
    strategy = BinaryStrategy.LAST_MODIFIED_WINS.value
    if conflict.local_modified >= conflict.remote_modified:
        return _local_wins(
            conflict, "Binary conflict resolved by last-modified-wins (local).", strategy
        )
    return _remote_wins(
        conflict, "Binary conflict resolved by last-modified-wins (remote).", strategy
    )


def _bin_conflict_file(conflict: ConflictInfo, base: str | None, now: datetime) -> ConflictOutcome:
    return _keep_both(conflict, now, BinaryStrategy.CONFLICT_FILE.value)


Resolver = Callable[[ConflictInfo, str | None, datetime], ConflictOutcome]

MARKDOWN_RESOLVERS: dict[MarkdownStrategy, Resolver] = {
    MarkdownStrategy.AUTO_MERGE: _md_auto_merge,
    MarkdownStrategy.CONFLICT_FILE: _md_conflict_file,
    MarkdownStrategy.LOCAL_WINS: _md_local_wins,
    MarkdownStrategy.REMOTE_WINS: _md_remote_wins,
}

BINARY_RESOLVERS: dict[BinaryStrategy, Resolver] = {
    BinaryStrategy.LAST_MODIFIED_WINS: _bin_last_modified_wins,
    BinaryStrategy.CONFLICT_FILE: _bin_conflict_file,
}

if set(MARKDOWN_RESOLVERS) != set(MarkdownStrategy):
    raise RuntimeError("MARKDOWN_RESOLVERS does not cover every MarkdownStrategy")
if set(BINARY_RESOLVERS) != set(BinaryStrategy):
    raise RuntimeError("BINARY_RESOLVERS does not cover every BinaryStrategy")


class ConflictResolver:
    """Pick and run the resolver for a conflict.

    Markdown conflicts keep a copy of both sides in the snapshot store
    under the pre-merge paths until the conflict is settled.
    """

    def __init__(
        self,
        config_dir: str,
        markdown_strategy: MarkdownStrategy,
        binary_strategy: BinaryStrategy,
        snapshots: SnapshotStore,
    ) -> None:
        self.config_dir = config_dir
        self.markdown_strategy = MarkdownStrategy(markdown_strategy)
        self.binary_strategy = BinaryStrategy(binary_strategy)
        self._snapshots = snapshots

    def resolve(self, conflict: ConflictInfo, now: datetime | None = None) -> ConflictOutcome:
        """Decide how to settle a conflict.

        Args:
            conflict: Conflict with both sides' content loaded.
            now: Clock used for conflict file names.

        Returns:
            ConflictOutcome for the engine to apply.
        """
        now = now or datetime.now()
        path = conflict.path

        if is_config_json_path(path, self.config_dir):
            outcome = self._resolve_json(conflict)
        elif is_markdown_path(path):
            local_pre, remote_pre = pre_merge_paths(path)
            self._snapshots.save(local_pre, _decode(conflict.local_content))
            self._snapshots.save(remote_pre, _decode(conflict.remote_content))
            base = self._snapshots.load(path)
            if base is None:
                logger.debug(f"No merge base for {path}; merging against empty text")
            outcome = MARKDOWN_RESOLVERS[self.markdown_strategy](conflict, base, now)
        else:
            outcome = BINARY_RESOLVERS[self.binary_strategy](conflict, None, now)

        conflict.resolution = outcome.strategy
        logger.info(f"Conflict on {path} handled by {outcome.strategy}: {outcome.status.value}")
        return outcome

    def _resolve_json(self, conflict: ConflictInfo) -> ConflictOutcome:
        merged = deep_merge_json(_decode(conflict.local_content), _decode(conflict.remote_content))
        if merged is None:
            return _local_wins(conflict, "JSON merge failed; local version kept.", "json-merge")
        content = _encode(merged)
        return ConflictOutcome(
            strategy="json-merge",
            status=RecordStatus.SYNCED,
            action=ActivityAction.MERGED,
            detail=f"Config merged ({conflict.local_hash[:8]} + {conflict.remote_hash[:8]}).",
            local_content=content,
            upload_content=content,
        )

    def settle(self, path: str) -> None:
        """Drop the pre-merge copies once a conflict no longer needs them."""
        for snapshot_path in pre_merge_paths(path):
            self._snapshots.delete(snapshot_path)
