"""Duplicate-artifact cleanup.

This module provides:
- DuplicateArtifactCleaner: Reconcile generated variant files
  (`.remote`, `.sync-conflict-*`) with their canonical path on both sides
- choose_primary: Pick the copy that survives among remote duplicates

Remote duplicates are grouped by canonical path. Identical copies are
trashed; divergent text copies are folded into the primary as conflict
blocks first. Divergent binary copies are left in place and logged.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from vaultsync.core.artifacts import (
    canonical_path_for_variant,
    is_text_candidate,
    normalize_path,
    split_path,
    strip_generated_suffixes,
)
from vaultsync.core.config import SyncSettings
from vaultsync.core.exclusions import ExclusionEngine
from vaultsync.core.hashing import compute_content_hash
from vaultsync.core.markers import render_conflict_block
from vaultsync.core.types import ActivityAction, ActivitySource, RecordStatus
from vaultsync.sync.errors import StorageQuotaError
from vaultsync.sync.ledger import ActivityLedger
from vaultsync.sync.local import LocalStore
from vaultsync.sync.records import SyncRecordStore
from vaultsync.sync.remote import RemoteFile, RemoteStore
from vaultsync.sync.types import CancellationToken, DuplicateCleanupSummary, ProgressSink

logger = logging.getLogger(__name__)

RemoteCall = Callable[[Callable[[], Awaitable[Any]]], Awaitable[Any]]


def choose_primary(group: list[RemoteFile], tracked_ids: set[str]) -> RemoteFile:
    """Pick the surviving copy of a duplicate group.

    Preference: a tracked remote id, then the newest modification time,
    then the lowest remote id.
    """
    tracked = [f for f in group if f.id in tracked_ids]
    candidates = tracked or group
    return min(candidates, key=lambda f: (-f.modified_time, f.id))


def _decode(content: bytes) -> str:
    return content.decode("utf-8", errors="surrogateescape")


def _encode(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


class DuplicateArtifactCleaner:
    """Fold generated variants back into their canonical files.

    Args:
        remote: Remote store.
        local: Local store.
        records: Record store, read to prefer tracked remote ids.
        ledger: Activity ledger.
        call: Wrapper that applies retry and auth refresh to a remote call.
        settings: Current settings, for exclusion rules.
        is_storage_full: Whether uploads are paused for a full remote.
        on_storage_full: Called with the path and error when an upload hits the quota.
    """

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalStore,
        records: SyncRecordStore,
        ledger: ActivityLedger,
        call: RemoteCall,
        settings: SyncSettings,
        is_storage_full: Callable[[], bool] = lambda: False,
        on_storage_full: Callable[[str, Exception], None] | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._records = records
        self._ledger = ledger
        self._call = call
        self.settings = settings
        self._is_storage_full = is_storage_full
        self._on_storage_full = on_storage_full

    async def run(
        self, progress: ProgressSink, cancel: CancellationToken
    ) -> DuplicateCleanupSummary:
        """Clean the remote side, then the local side."""
        summary = DuplicateCleanupSummary()
        exclusions = ExclusionEngine(self.settings)
        await self._clean_remote(summary, exclusions, progress, cancel)
        await self._clean_local(summary, exclusions, progress, cancel)
        if summary.total:
            logger.info(f"Duplicate cleanup reconciled {summary.total} artifacts")
        return summary

    # =========================================================================
    # Remote side
    # =========================================================================

    async def _clean_remote(
        self,
        summary: DuplicateCleanupSummary,
        exclusions: ExclusionEngine,
        progress: ProgressSink,
        cancel: CancellationToken,
    ) -> None:
        files = await self._call(self._remote.list_all_files)
        groups: dict[str, list[RemoteFile]] = defaultdict(list)
        for remote in files:
            if remote.is_folder or remote.trashed:
                continue
            groups[strip_generated_suffixes(remote.path)].append(remote)

        pending = {
            canonical: group
            for canonical, group in groups.items()
            if not exclusions.is_excluded(canonical)
            and (len(group) > 1 or normalize_path(group[0].path) != canonical)
        }
        tracked_ids = self._records.known_remote_ids()

        for done, canonical in enumerate(sorted(pending), start=1):
            cancel.raise_if_cancelled()
            progress("Cleaning remote duplicates", done, len(pending))
            group = pending[canonical]
            primary = choose_primary(group, tracked_ids)
            await self._fold_remote_group(canonical, primary, group, summary)

    async def _fold_remote_group(
        self,
        canonical: str,
        primary: RemoteFile,
        group: list[RemoteFile],
        summary: DuplicateCleanupSummary,
    ) -> None:
        primary_content: bytes | None = None
        for other in sorted(group, key=lambda f: f.id):
            if other.id == primary.id:
                continue
            if primary_content is None:
                primary_content = await self._call(lambda: self._remote.download_file(primary.id))
            other_content = await self._call(lambda: self._remote.download_file(other.id))

            if compute_content_hash(other_content) == compute_content_hash(primary_content):
                await self._call(lambda: self._remote.trash_file(other.id))
                summary.remote_trashed += 1
                self._ledger.log(
                    ActivityAction.DELETED,
                    other.path,
                    f"Trashed duplicate of {canonical}.",
                    source=ActivitySource.REMOTE,
                    remote_id=other.id,
                )
                continue

            if not is_text_candidate(canonical, primary.mime_type):
                self._ledger.log(
                    ActivityAction.SKIPPED,
                    other.path,
                    f"Divergent binary duplicate of {canonical} left in place.",
                    source=ActivitySource.REMOTE,
                    remote_id=other.id,
                )
                continue

            merged = _encode(render_conflict_block(_decode(primary_content), _decode(other_content)))
            if not await self._upload_merge(canonical, primary, merged):
                continue
            await self._call(lambda: self._remote.trash_file(other.id))
            primary_content = merged
            summary.remote_merged += 1
            self._ledger.log(
                ActivityAction.MERGED,
                canonical,
                f"Merged duplicate {other.path} with conflict markers.",
                source=ActivitySource.REMOTE,
                remote_id=primary.id,
            )

        if normalize_path(primary.path) != canonical:
            _, name = split_path(canonical)
            await self._call(lambda: self._remote.rename_file(primary.id, name))
            summary.remote_renamed += 1
            self._ledger.log(
                ActivityAction.PULLED,
                canonical,
                f"Renamed remote variant {primary.path} to canonical name.",
                source=ActivitySource.REMOTE,
                remote_id=primary.id,
            )

    async def _upload_merge(self, canonical: str, primary: RemoteFile, merged: bytes) -> bool:
        if not self._is_storage_full():
            try:
                await self._call(lambda: self._remote.update_file(primary.id, merged))
                return True
            except StorageQuotaError as e:
                if self._on_storage_full is not None:
                    self._on_storage_full(canonical, e)
        self._ledger.log(
            ActivityAction.SKIPPED,
            canonical,
            "Duplicate merge paused while remote storage is full.",
            source=ActivitySource.REMOTE,
            remote_id=primary.id,
        )
        return False

    # =========================================================================
    # Local side
    # =========================================================================

    async def _clean_local(
        self,
        summary: DuplicateCleanupSummary,
        exclusions: ExclusionEngine,
        progress: ProgressSink,
        cancel: CancellationToken,
    ) -> None:
        variants: list[tuple[str, str]] = []
        for path in await self._local.list_files():
            path = normalize_path(path)
            canonical = canonical_path_for_variant(path)
            if canonical is not None and not exclusions.is_excluded(canonical):
                variants.append((path, canonical))

        for done, (path, canonical) in enumerate(sorted(variants), start=1):
            cancel.raise_if_cancelled()
            progress("Cleaning local duplicates", done, len(variants))
            if not await self._local.exists(path):
                continue
            await self._fold_local_variant(path, canonical, summary)

    async def _fold_local_variant(
        self, path: str, canonical: str, summary: DuplicateCleanupSummary
    ) -> None:
        if not await self._local.exists(canonical):
            await self._local.rename(path, canonical)
            summary.local_renamed += 1
            self._ledger.log(
                ActivityAction.SKIPPED,
                canonical,
                f"Renamed local variant {path} to canonical name.",
                source=ActivitySource.LOCAL,
            )
            return

        variant_content = await self._local.read(path)
        canonical_content = await self._local.read(canonical)
        if compute_content_hash(variant_content) == compute_content_hash(canonical_content):
            await self._local.remove(path)
            summary.local_removed += 1
            self._ledger.log(
                ActivityAction.DELETED,
                path,
                f"Removed local duplicate of {canonical}.",
                source=ActivitySource.LOCAL,
            )
            return

        if not is_text_candidate(canonical):
            self._ledger.log(
                ActivityAction.SKIPPED,
                path,
                f"Divergent binary duplicate of {canonical} left in place.",
                source=ActivitySource.LOCAL,
            )
            return

        merged = _encode(
            render_conflict_block(_decode(canonical_content), _decode(variant_content))
        )
        await self._local.write(canonical, merged)
        await self._local.remove(path)
        record = self._records.get(canonical)
        if record is not None:
            record.local_hash = compute_content_hash(merged)
            record.status = RecordStatus.CONFLICT
            self._records.set(record)
        summary.local_merged += 1
        self._ledger.log(
            ActivityAction.MERGED,
            canonical,
            f"Merged local duplicate {path} with conflict markers.",
            source=ActivitySource.LOCAL,
        )
