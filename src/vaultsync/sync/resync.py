"""Full re-sync: reconcile both sides from scratch.

This module provides:
- FullResync: Build a ResyncPlan and execute it
- default_conflict_action: Action proposed for a path present on both sides

A full re-sync ignores the stored page token and every record. Files are
paired by path and compared by content hash:
    - local only: upload
    - remote only: download
    - both, identical: adopt as synced without transfer
    - both, different: keep-local, keep-remote or merge-markers

Execution order is downloads, conflicts, uploads, then duplicate cleanup.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Callable

from vaultsync.core.artifacts import escapes_root, is_text_candidate, normalize_path
from vaultsync.core.config import SyncSettings
from vaultsync.core.exclusions import ExclusionEngine
from vaultsync.core.hashing import compute_content_hash
from vaultsync.core.markers import render_conflict_block
from vaultsync.core.types import ActivityAction, ActivitySource, RecordStatus
from vaultsync.sync.duplicates import DuplicateArtifactCleaner, RemoteCall
from vaultsync.sync.errors import (
    AuthenticationFailedError,
    RemoteError,
    RemoteUnavailableError,
    StorageQuotaError,
    SyncCancelledError,
)
from vaultsync.sync.ledger import ActivityLedger
from vaultsync.sync.local import LocalStore
from vaultsync.sync.pool import run_bounded
from vaultsync.sync.records import SyncRecordStore
from vaultsync.sync.remote import RemoteFile, RemoteStore
from vaultsync.sync.resolver import is_markdown_path
from vaultsync.sync.types import (
    CancellationToken,
    ProgressSink,
    ResyncConflict,
    ResyncPlan,
    ResyncResult,
    SyncRecord,
)

logger = logging.getLogger(__name__)

KEEP_LOCAL = "keep-local"
KEEP_REMOTE = "keep-remote"
MERGE_MARKERS = "merge-markers"
SKIPPED = "skipped"


def default_conflict_action(path: str, mime_type: str | None = None) -> str:
    return MERGE_MARKERS if is_text_candidate(path, mime_type) else KEEP_LOCAL


class FullResync:
    """One full re-sync run.

    Args:
        remote: Remote store.
        local: Local store.
        records: Record store; reset when the run starts.
        ledger: Activity ledger.
        call: Wrapper that applies retry and auth refresh to a remote call.
        exclusions: Exclusion rules applied to both listings.
        remember_base: Callback storing the merge base of a synced file.
        settings: Current settings.
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
        exclusions: ExclusionEngine,
        remember_base: Callable[[str, bytes], None],
        settings: SyncSettings,
        is_storage_full: Callable[[], bool] = lambda: False,
        on_storage_full: Callable[[str, Exception], None] | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._records = records
        self._ledger = ledger
        self._call = call
        self._exclusions = exclusions
        self._remember_base = remember_base
        self.settings = settings
        self._is_storage_full = is_storage_full
        self._on_storage_full = on_storage_full
        self._local_hashes: dict[str, str] = {}

    # =========================================================================
    # Planning
    # =========================================================================

    async def _scan_local(self) -> dict[str, str]:
        paths = [normalize_path(p) for p in await self._local.list_files()]

        async def inspect(path: str) -> tuple[str, str] | None:
            stat = await self._local.stat(path)
            if stat is None or self._exclusions.is_excluded(path, stat.size):
                return None
            return path, await self._local.hash(path)

        states = await run_bounded(paths, inspect, self.settings.concurrency_limit)
        return dict(state for state in states if state is not None)

    async def _scan_remote(self) -> dict[str, RemoteFile]:
        files = await self._call(self._remote.list_all_files)
        by_path: dict[str, RemoteFile] = {}
        for remote in files:
            if remote.is_folder or remote.trashed:
                continue
            path = normalize_path(remote.path)
            if escapes_root(path):
                logger.warning(f"Skipping remote file outside the vault: {remote.path}")
                continue
            if self._exclusions.is_excluded(path, remote.size or None):
                continue
            current = by_path.get(path)
            # Extra copies at the same path are left to duplicate cleanup.
            if current is None or (remote.modified_time, current.id) > (
                current.modified_time,
                remote.id,
            ):
                by_path[path] = remote
        return by_path

    async def plan(self) -> ResyncPlan:
        """Compare both sides without changing anything."""
        local_hashes = await self._scan_local()
        remote_files = await self._scan_remote()
        self._local_hashes = local_hashes

        plan = ResyncPlan(local_count=len(local_hashes), remote_count=len(remote_files))
        for path in sorted(set(local_hashes) | set(remote_files)):
            remote = remote_files.get(path)
            local_hash = local_hashes.get(path)
            if remote is None:
                plan.uploads.append(path)
            elif local_hash is None:
                plan.downloads.append(remote)
            elif remote.content_hash == local_hash:
                plan.identical.append(remote)
            else:
                plan.conflicts.append(
                    ResyncConflict(
                        path=path,
                        remote=remote,
                        action=default_conflict_action(path, remote.mime_type),
                    )
                )
        logger.info(
            f"Full re-sync plan: {len(plan.uploads)} uploads, {len(plan.downloads)} downloads, "
            f"{len(plan.conflicts)} conflicts, {len(plan.identical)} identical"
        )
        return plan

    # =========================================================================
    # Execution
    # =========================================================================

    async def run(
        self,
        progress: ProgressSink,
        cancel: CancellationToken,
        cleaner: DuplicateArtifactCleaner,
        on_reset: Callable[[], None] | None = None,
    ) -> ResyncResult:
        """Apply a fresh plan, clean duplicates and store the new page token.

        Records are reset, and on_reset is called, only after both sides were
        listed, so a failed listing leaves the previous state untouched.

        Raises:
            RemoteUnavailableError: The remote could not be reached.
            AuthenticationFailedError: Re-authentication is required.
        """
        start_token = await self._call(self._remote.get_start_page_token)
        plan = await self.plan()
        self._records.reset()
        if on_reset is not None:
            on_reset()
        result = ResyncResult(plan=plan)

        steps: list[tuple[str, object]] = []
        steps += [("download", remote) for remote in plan.downloads]
        steps += [("identical", remote) for remote in plan.identical]
        steps += [("conflict", conflict) for conflict in plan.conflicts]
        steps += [("upload", path) for path in plan.uploads]

        try:
            for done, (kind, item) in enumerate(steps, start=1):
                cancel.raise_if_cancelled()
                progress("Re-syncing files", done, len(steps))
                try:
                    await self._apply_step(kind, item, result)
                except (RemoteUnavailableError, AuthenticationFailedError):
                    raise
                except (RemoteError, OSError) as e:
                    result.errors += 1
                    path = item if isinstance(item, str) else getattr(item, "path", "")
                    self._ledger.log(
                        ActivityAction.ERROR,
                        str(path),
                        "Full re-sync failed for this file.",
                        error=str(e),
                    )
            cancel.raise_if_cancelled()
            result.cleanup = await cleaner.run(progress, cancel)
        except SyncCancelledError:
            result.cancelled = True
            self._records.save()
            logger.info("Full re-sync cancelled; partial progress saved")
            return result

        self._records.page_token = start_token
        self._records.save()
        return result

    async def _apply_step(self, kind: str, item: object, result: ResyncResult) -> None:
        if kind == "download":
            assert isinstance(item, RemoteFile)
            await self._download(item)
            result.downloaded += 1
        elif kind == "identical":
            assert isinstance(item, RemoteFile)
            path = normalize_path(item.path)
            self._records.set(SyncRecord.synced(item.id, path, self._local_hashes[path]))
            self._remember_base(path, await self._local.read(path))
            result.adopted += 1
        elif kind == "conflict":
            assert isinstance(item, ResyncConflict)
            outcome = await self._settle_conflict(item)
            if outcome == "adopted":
                result.adopted += 1
            elif outcome == MERGE_MARKERS:
                result.merged += 1
            elif outcome == KEEP_REMOTE:
                result.downloaded += 1
            elif outcome == SKIPPED:
                result.skipped += 1
            else:
                result.uploaded += 1
        else:
            assert isinstance(item, str)
            if await self._upload(item):
                result.uploaded += 1
            else:
                result.skipped += 1

    async def _download(self, remote: RemoteFile) -> None:
        path = normalize_path(remote.path)
        content = await self._call(lambda: self._remote.download_file(remote.id))
        await self._local.write(path, content)
        self._records.set(SyncRecord.synced(remote.id, path, compute_content_hash(content)))
        self._remember_base(path, content)
        self._ledger.log(
            ActivityAction.PULLED,
            path,
            "Downloaded during full re-sync.",
            source=ActivitySource.REMOTE,
            remote_id=remote.id,
        )

    def _keep_forever(self, path: str) -> bool:
        return self.settings.keep_revisions_forever and is_markdown_path(path)

    def _uploads_blocked(self, path: str) -> bool:
        if not self._is_storage_full():
            return False
        self._ledger.log(
            ActivityAction.SKIPPED,
            path,
            "Upload paused while remote storage is full.",
            source=ActivitySource.LOCAL,
        )
        return True

    def _quota_exceeded(self, path: str, error: StorageQuotaError) -> None:
        if self._on_storage_full is not None:
            self._on_storage_full(path, error)
        self._ledger.log(
            ActivityAction.SKIPPED,
            path,
            "Upload paused while remote storage is full.",
            error=str(error),
            source=ActivitySource.LOCAL,
        )

    async def _upload(self, path: str) -> bool:
        """Create path remotely; False if uploads are paused for a full remote."""
        if self._uploads_blocked(path):
            return False
        content = await self._local.read(path)
        folder, name = posixpath.split(path)
        parent_id = await self._call(lambda: self._remote.ensure_folder(folder))
        try:
            created = await self._call(
                lambda: self._remote.create_file(
                    name, content, parent_id, keep_forever=self._keep_forever(path)
                )
            )
        except StorageQuotaError as e:
            self._quota_exceeded(path, e)
            return False
        self._records.set(SyncRecord.synced(created.id, path, compute_content_hash(content)))
        self._remember_base(path, content)
        self._ledger.log(
            ActivityAction.PUSHED,
            path,
            "Uploaded during full re-sync.",
            source=ActivitySource.LOCAL,
            remote_id=created.id,
        )
        return True

    async def _keep_local(
        self, remote: RemoteFile, path: str, content: bytes, remote_hash: str
    ) -> bool:
        """Upload the local side over remote; False leaves it pending."""
        if not self._uploads_blocked(path):
            try:
                await self._call(
                    lambda: self._remote.update_file(
                        remote.id, content, keep_forever=self._keep_forever(path)
                    )
                )
                return True
            except StorageQuotaError as e:
                self._quota_exceeded(path, e)
        self._records.set(
            SyncRecord(
                remote_id=remote.id,
                local_path=path,
                local_hash=compute_content_hash(content),
                remote_hash=remote_hash,
                status=RecordStatus.PENDING_PUSH,
            )
        )
        return False

    async def _settle_conflict(self, conflict: ResyncConflict) -> str:
        path = conflict.path
        remote = conflict.remote
        remote_content = await self._call(lambda: self._remote.download_file(remote.id))
        local_content = await self._local.read(path)
        remote_hash = compute_content_hash(remote_content)
        local_hash = compute_content_hash(local_content)

        if remote_hash == local_hash:
            self._records.set(SyncRecord.synced(remote.id, path, local_hash))
            self._remember_base(path, local_content)
            return "adopted"

        if conflict.action == KEEP_REMOTE:
            await self._local.write(path, remote_content)
            self._records.set(SyncRecord.synced(remote.id, path, remote_hash))
            self._remember_base(path, remote_content)
            detail = "Remote version kept during full re-sync."
        elif conflict.action == MERGE_MARKERS:
            merged = render_conflict_block(
                local_content.decode("utf-8", errors="surrogateescape"),
                remote_content.decode("utf-8", errors="surrogateescape"),
            ).encode("utf-8", errors="surrogateescape")
            await self._local.write(path, merged)
            self._records.set(
                SyncRecord(
                    remote_id=remote.id,
                    local_path=path,
                    local_hash=compute_content_hash(merged),
                    remote_hash=remote_hash,
                    status=RecordStatus.CONFLICT,
                )
            )
            self._remember_base(path, remote_content)
            detail = "Both versions kept with conflict markers; resolve manually."
        else:
            if not await self._keep_local(remote, path, local_content, remote_hash):
                return SKIPPED
            self._records.set(SyncRecord.synced(remote.id, path, local_hash))
            self._remember_base(path, local_content)
            detail = "Local version kept during full re-sync."

        self._ledger.log(
            ActivityAction.CONFLICT,
            path,
            detail,
            source=ActivitySource.SYSTEM,
            remote_id=remote.id,
        )
        return conflict.action
