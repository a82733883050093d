"""Sync engine: pull, resolve and push cycles over a vault.

This module provides:
- SyncEngine: Owns the record store, change queue and activity ledger,
  drives sync cycles and the sync state machine
- CycleMode: Which phases a triggered cycle runs

Cycle structure:
    1. Pull - fetch remote changes since the stored page token (or list
       everything when there is none) and apply them locally. Paths where
       both sides changed are collected as conflicts.
    2. Resolve - settle each conflict with the configured strategy.
    3. Push - scan the vault for changes the watcher missed, then drain the
       change queue: uploads, renames and deletes.

Only one cycle runs at a time. A trigger arriving mid-cycle marks the
engine `pending` and the running cycle loops once more before finishing.

Failure domains:
    Per-file failures are logged to the ledger and the cycle continues.
    Cycle-level failures (remote unreachable, authentication lost) abort
    the remaining phases and move the engine to `offline` or `error`.
    A quota failure pauses uploads until acknowledge_storage_quota_pause().
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TypeVar

from vaultsync.core.artifacts import (
    escapes_root,
    normalize_path,
    remote_variant_path,
    restored_file_path,
    split_path,
)
from vaultsync.core.config import SyncSettings
from vaultsync.core.exclusions import ExclusionEngine
from vaultsync.core.hashing import compute_content_hash
from vaultsync.core.markers import ConflictMarkerError, analyze
from vaultsync.core.markers import resolve as resolve_markers
from vaultsync.core.types import (
    ActivityAction,
    ActivitySource,
    MarkerStrategy,
    PauseReason,
    QueueAction,
    RecordStatus,
    SyncState,
)
from vaultsync.sync.debounce import QuiescenceScheduler
from vaultsync.sync.duplicates import DuplicateArtifactCleaner
from vaultsync.sync.errors import (
    AuthenticationFailedError,
    NotFoundError,
    PermanentRemoteError,
    RemoteError,
    RemoteUnavailableError,
    StorageQuotaError,
    SyncCancelledError,
)
from vaultsync.sync.ledger import ActivityLedger
from vaultsync.sync.local import LocalStore
from vaultsync.sync.notifications import Notification, NotificationType, Notifier, log_notifier
from vaultsync.sync.pool import run_bounded
from vaultsync.sync.queue import ChangeQueue
from vaultsync.sync.records import SyncRecordStore
from vaultsync.sync.remote import (
    RateLimitSnapshot,
    RemoteChange,
    RemoteFile,
    RemoteRevision,
    RemoteStore,
    StorageQuota,
    TokenProvider,
)
from vaultsync.sync.resolver import ConflictResolver, is_markdown_path
from vaultsync.sync.resync import FullResync
from vaultsync.sync.retry import retry_with_backoff, with_auth_refresh
from vaultsync.sync.selective import reconcile_selective_change
from vaultsync.sync.snapshots import SnapshotStore
from vaultsync.sync.types import (
    ActivityLogEntry,
    CancellationToken,
    ConflictInfo,
    CycleSummary,
    DuplicateCleanupSummary,
    IgnoredFileEntry,
    IgnoredFilesReport,
    ProgressSink,
    ResyncPlan,
    ResyncResult,
    SyncQueueEntry,
    SyncRecord,
    null_progress,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRASH_DIR_NAME = "plugins/vaultsync/trash"

RECORDS_DB = "sync-records.db"
QUEUE_DB = "sync-queue.db"
LEDGER_DB = "activity.db"
SNAPSHOTS_DB = "snapshots.db"


def _is_permanent(error: Exception) -> bool:
    """Failures that a later cycle cannot fix (4xx, rejected paths)."""
    return isinstance(error, (PermanentRemoteError, ValueError))


class CycleMode(Enum):
    """Phases run by a triggered cycle."""

    FULL = "full"
    PULL = "pull"
    PUSH = "push"

    @property
    def pulls(self) -> bool:
        return self is not CycleMode.PUSH

    @property
    def pushes(self) -> bool:
        return self is not CycleMode.PULL


class SyncEngine:
    """Orchestrates sync between a LocalStore and a RemoteStore.

    The engine is the only writer of its record store, change queue and
    activity ledger; accessors return copies.

    Example:
        engine = SyncEngine(settings, remote, FileSystemLocalStore(vault), data_dir=state_dir)
        summary = await engine.run_sync()
    """

    def __init__(
        self,
        settings: SyncSettings,
        remote: RemoteStore,
        local: LocalStore,
        *,
        data_dir: Path | None = None,
        token_provider: TokenProvider | None = None,
        notifier: Notifier | None = log_notifier,
    ) -> None:
        self.settings = settings
        self._remote = remote
        self._local = local
        self._tokens = token_provider
        self._notifier = notifier

        self._records = SyncRecordStore(data_dir / RECORDS_DB if data_dir else None)
        self._queue = ChangeQueue(
            data_dir / QUEUE_DB if data_dir else None, is_tracked=self._records.__contains__
        )
        self._ledger = ActivityLedger(data_dir / LEDGER_DB if data_dir else None)
        self._snapshots = SnapshotStore(data_dir / SNAPSHOTS_DB if data_dir else None)

        self._exclusions = ExclusionEngine(settings)
        self._resolver = self._build_resolver(settings)
        self._cleaner = DuplicateArtifactCleaner(
            self._remote,
            self._local,
            self._records,
            self._ledger,
            self._call,
            settings,
            is_storage_full=lambda: self._storage_full,
            on_storage_full=self._enter_storage_full,
        )
        self._debounce = QuiescenceScheduler(settings.push_quiescence_seconds)

        self._lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self._user_paused = False
        self._storage_full = False
        self._rerun_requested = False
        self._cycles_since_cleanup = 0
        self._acknowledged_conflicts: set[str] = set()
        self._timer_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[object]] = set()
        self._running = False

    def _build_resolver(self, settings: SyncSettings) -> ConflictResolver:
        return ConflictResolver(
            settings.config_dir,
            settings.md_conflict_strategy,
            settings.binary_conflict_strategy,
            self._snapshots,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def pause_reason(self) -> PauseReason | None:
        if self._user_paused:
            return PauseReason.USER
        if self._storage_full:
            return PauseReason.STORAGE_FULL
        return None

    @property
    def is_storage_full(self) -> bool:
        return self._storage_full

    @property
    def exclusions(self) -> ExclusionEngine:
        return self._exclusions

    def _set_state(self, state: SyncState) -> None:
        if state is not self._state:
            logger.info(f"Sync state: {self._state.value} -> {state.value}")
            self._state = state

    def _settled_state(self) -> SyncState:
        if self._user_paused or self._storage_full:
            return SyncState.PAUSED
        if self._records.conflicted_paths():
            return SyncState.CONFLICT
        return SyncState.IDLE

    def _notify(self, title: str, message: str, kind: NotificationType) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(Notification(title=title, message=message, type=kind))
        except Exception:
            logger.exception("Notifier failed")

    # =========================================================================
    # Read-only views
    # =========================================================================

    def get_all_activity_entries(self) -> list[ActivityLogEntry]:
        """Every retained ledger entry, newest first."""
        return self._ledger.entries()

    def get_records(self) -> list[SyncRecord]:
        return self._records.all_records()

    def get_record(self, path: str) -> SyncRecord | None:
        record = self._records.get(normalize_path(path))
        if record is None:
            return None
        return SyncRecord(
            remote_id=record.remote_id,
            local_path=record.local_path,
            local_hash=record.local_hash,
            remote_hash=record.remote_hash,
            last_synced=record.last_synced,
            status=record.status,
        )

    def get_pending_changes(self) -> list[SyncQueueEntry]:
        return self._queue.snapshot()

    def list_conflicted_files(self) -> list[str]:
        return self._records.conflicted_paths()

    @property
    def conflict_alert_count(self) -> int:
        """Unresolved conflicts the user has not acknowledged yet."""
        open_paths = set(self._ledger.unresolved_conflict_paths())
        self._acknowledged_conflicts &= open_paths
        return len(open_paths - self._acknowledged_conflicts)

    def acknowledge_conflict_alerts(self) -> None:
        self._acknowledged_conflicts = set(self._ledger.unresolved_conflict_paths())

    def get_rate_limit_snapshot(self) -> RateLimitSnapshot:
        return self._remote.get_rate_limit_snapshot()

    async def get_storage_quota(self) -> StorageQuota:
        return await self._call(self._remote.get_storage_quota)

    # =========================================================================
    # Remote calls
    # =========================================================================

    async def _call(
        self,
        func: Callable[[], Awaitable[T]],
        on_retry: Callable[[int, Exception], None] | None = None,
    ) -> T:
        """Run a remote call with backoff on transient errors and one 401 refresh."""
        return await with_auth_refresh(
            lambda: retry_with_backoff(
                func,
                max_retries=self.settings.max_retries,
                initial_backoff=self.settings.retry_initial_backoff,
                max_backoff=self.settings.retry_max_backoff,
                on_retry=on_retry,
            ),
            self._tokens,
        )

    async def _call_for(self, entry: SyncQueueEntry, func: Callable[[], Awaitable[T]]) -> T:
        """Remote call on behalf of a queue entry; counts its retries."""

        def count(attempt: int, error: Exception) -> None:
            entry.retry_count += 1

        return await self._call(func, on_retry=count)

    # =========================================================================
    # Triggers
    # =========================================================================

    async def run_sync(self, cancel: CancellationToken | None = None) -> CycleSummary | None:
        """Run a full pull, resolve and push cycle.

        Returns:
            Cycle counters, or None if no cycle ran (paused, already
            running, offline or failed).
        """
        return await self._trigger(CycleMode.FULL, cancel)

    async def run_pull_now(self) -> CycleSummary | None:
        """Pull and resolve only."""
        return await self._trigger(CycleMode.PULL, None)

    async def run_push_now(self) -> CycleSummary | None:
        """Push only."""
        return await self._trigger(CycleMode.PUSH, None)

    async def _trigger(
        self, mode: CycleMode, cancel: CancellationToken | None
    ) -> CycleSummary | None:
        if self._user_paused:
            logger.info("Sync is paused; trigger ignored")
            return None
        if self._lock.locked():
            self._rerun_requested = True
            self._set_state(SyncState.PENDING)
            return None
        async with self._lock:
            return await self._execute(mode, cancel or CancellationToken())

    async def _execute(self, mode: CycleMode, cancel: CancellationToken) -> CycleSummary | None:
        summary = CycleSummary()
        self._set_state(SyncState.SYNCING)
        try:
            while True:
                self._rerun_requested = False
                if mode.pulls:
                    await self._pull_phase(summary, cancel)
                if mode.pushes:
                    await self._push_phase(summary, cancel)
                if not self._rerun_requested:
                    break
                logger.info("Changes queued during sync; running again")
                mode = CycleMode.FULL
                self._set_state(SyncState.SYNCING)
            if mode is CycleMode.FULL:
                await self._maybe_clean_duplicates(cancel)
        except SyncCancelledError as e:
            self._save()
            self._ledger.log(ActivityAction.SKIPPED, "", str(e))
            self._set_state(self._settled_state())
            self._notify("Sync cancelled", str(e), NotificationType.WARNING)
            return None
        except RemoteUnavailableError as e:
            self._save()
            self._set_state(SyncState.OFFLINE)
            self._notify("Offline", f"Remote unreachable: {e}", NotificationType.WARNING)
            return None
        except AuthenticationFailedError as e:
            self._save()
            self._ledger.log(ActivityAction.ERROR, "", "Authentication failed.", error=str(e))
            self._set_state(SyncState.ERROR)
            self._notify("Sync failed", "Re-authentication required.", NotificationType.ERROR)
            return None
        except (RemoteError, OSError) as e:
            self._save()
            self._ledger.log(ActivityAction.ERROR, "", "Sync failed.", error=str(e))
            self._set_state(SyncState.ERROR)
            self._notify("Sync failed", str(e), NotificationType.ERROR)
            return None
        except Exception as e:
            logger.exception("Sync cycle failed unexpectedly")
            self._save()
            self._ledger.log(ActivityAction.ERROR, "", "Sync failed unexpectedly.", error=str(e))
            self._set_state(SyncState.ERROR)
            self._notify("Sync failed", str(e), NotificationType.ERROR)
            return None

        self._save()
        self._set_state(self._settled_state())
        self._notify_summary(summary)
        logger.info(f"Sync cycle finished: {summary.describe()}")
        return summary

    def _notify_summary(self, summary: CycleSummary) -> None:
        if self._storage_full:
            self._notify(
                "Storage full",
                "Uploads are paused until space is freed and the pause is acknowledged.",
                NotificationType.WARNING,
            )
        elif self._state is SyncState.CONFLICT:
            count = len(self._records.conflicted_paths())
            self._notify(
                "Sync finished with conflicts",
                f"{summary.describe()}; {count} files need manual resolution.",
                NotificationType.CONFLICT,
            )
        else:
            self._notify("Sync complete", summary.describe(), NotificationType.INFO)

    def _save(self) -> None:
        if self._records.dirty:
            self._records.save()

    # =========================================================================
    # Pause / resume / quota
    # =========================================================================

    def pause_sync(self) -> None:
        self._user_paused = True
        self._set_state(SyncState.PAUSED)

    async def resume_sync(self) -> CycleSummary | None:
        if not self._user_paused:
            return None
        self._user_paused = False
        self._set_state(self._settled_state())
        return await self.run_sync()

    def _enter_storage_full(self, path: str, error: Exception) -> None:
        if not self._storage_full:
            self._ledger.log(
                ActivityAction.ERROR,
                path,
                "Remote storage is full; uploads paused.",
                error=str(error),
                source=ActivitySource.LOCAL,
            )
        self._storage_full = True
        self._set_state(SyncState.PAUSED)

    async def acknowledge_storage_quota_pause(self) -> CycleSummary | None:
        """Resume uploads after the user freed remote space."""
        if not self._storage_full:
            return None
        self._storage_full = False
        self._set_state(self._settled_state())
        logger.info("Storage quota pause acknowledged; resuming uploads")
        return await self.run_sync()

    # =========================================================================
    # Pull phase
    # =========================================================================

    async def _fetch_changes(self) -> tuple[list[RemoteChange], str]:
        token = self._records.page_token
        if token is None:
            start_token = await self._call(self._remote.get_start_page_token)
            files = await self._call(self._remote.list_all_files)
            logger.info(f"No page token; bootstrapping from {len(files)} remote files")
            return [RemoteChange(file_id=f.id, file=f) for f in files], start_token

        changes: list[RemoteChange] = []
        new_token: str | None = None
        page_token: str | None = token
        while page_token:
            current = page_token
            page = await self._call(lambda: self._remote.list_changed_files(current))
            changes.extend(page.changes)
            if page.new_start_page_token:
                new_token = page.new_start_page_token
            page_token = page.next_page_token
        return changes, new_token or token

    async def _pull_phase(self, summary: CycleSummary, cancel: CancellationToken) -> None:
        changes, next_token = await self._fetch_changes()
        conflicts: list[ConflictInfo] = []
        failures = 0

        for change in changes:
            cancel.raise_if_cancelled()
            try:
                conflict = await self._apply_remote_change(change, summary)
            except (RemoteUnavailableError, AuthenticationFailedError, SyncCancelledError):
                raise
            except (RemoteError, OSError, ValueError) as e:
                summary.errors += 1
                path = change.file.path if change.file else change.file_id
                if _is_permanent(e):
                    detail = "Failed to apply remote change; skipped."
                else:
                    failures += 1
                    detail = "Failed to apply remote change; will retry next sync."
                self._ledger.log(
                    ActivityAction.ERROR,
                    path,
                    detail,
                    error=str(e),
                    source=ActivitySource.REMOTE,
                    remote_id=change.file_id,
                )
                continue
            if conflict is not None:
                conflicts.append(conflict)

        for conflict in conflicts:
            cancel.raise_if_cancelled()
            if not await self._resolve_conflict(conflict, summary):
                failures += 1

        # Only retryable failures hold the token; permanent ones are in the ledger.
        if failures:
            logger.warning(f"{failures} remote changes failed; keeping page token for retry")
        else:
            self._records.page_token = next_token
        self._save()

    async def _apply_remote_change(
        self, change: RemoteChange, summary: CycleSummary
    ) -> ConflictInfo | None:
        record = self._records.get_by_remote_id(change.file_id)
        remote = change.file
        if change.removed or remote is None or remote.trashed:
            if record is not None:
                await self._apply_remote_deletion(record, summary)
            return None
        if remote.is_folder:
            return None

        path = normalize_path(remote.path)
        if escapes_root(path):
            raise PermanentRemoteError(f"Remote path leaves the vault: {remote.path}")
        if record is not None and record.local_path != path:
            if not await self._apply_remote_rename(record, path, summary):
                return None

        if self._exclusions.is_excluded(path, remote.size or None):
            logger.debug(f"Skipping excluded remote file {path}")
            return None
        if record is not None and remote.content_hash and remote.content_hash == record.remote_hash:
            return None

        content = await self._call(lambda: self._remote.download_file(remote.id))
        remote_hash = compute_content_hash(content)
        if record is not None and remote_hash == record.remote_hash:
            return None

        local_stat = await self._local.stat(path)
        if local_stat is None:
            await self._write_pulled(path, remote, content, remote_hash, summary)
            return None

        local_content = await self._local.read(path)
        local_hash = compute_content_hash(local_content)
        if local_hash == remote_hash:
            self._records.set(SyncRecord.synced(remote.id, path, remote_hash))
            self._remember_base(path, content)
            return None

        if record is None:
            variant = remote_variant_path(path)
            await self._local.write(variant, content)
            # Track the remote id so the local copy is pushed as an update.
            self._records.set(
                SyncRecord(
                    remote_id=remote.id,
                    local_path=path,
                    local_hash=local_hash,
                    remote_hash=remote_hash,
                    status=RecordStatus.PENDING_PUSH,
                )
            )
            summary.pulled += 1
            self._ledger.log(
                ActivityAction.PULLED,
                path,
                f"Remote copy saved as {variant}; local file will be uploaded over it.",
                source=ActivitySource.REMOTE,
                remote_id=remote.id,
            )
            return None

        if local_hash == record.local_hash and record.status not in (
            RecordStatus.CONFLICT,
            RecordStatus.PENDING_PUSH,
        ):
            await self._write_pulled(path, remote, content, remote_hash, summary)
            return None

        # A pending push has not reached the remote, so the last remote hash is the base.
        if record.status is RecordStatus.PENDING_PUSH:
            base_hash = record.remote_hash
        else:
            base_hash = record.local_hash
        return ConflictInfo(
            path=path,
            remote_id=remote.id,
            local_hash=local_hash,
            remote_hash=remote_hash,
            base_hash=base_hash,
            local_modified=local_stat.mtime,
            remote_modified=remote.modified_time,
            local_content=local_content,
            remote_content=content,
        )

    async def _write_pulled(
        self,
        path: str,
        remote: RemoteFile,
        content: bytes,
        remote_hash: str,
        summary: CycleSummary,
    ) -> None:
        await self._local.write(path, content)
        self._records.set(SyncRecord.synced(remote.id, path, remote_hash))
        self._remember_base(path, content)
        summary.pulled += 1
        self._ledger.log(
            ActivityAction.PULLED,
            path,
            "Downloaded from remote.",
            source=ActivitySource.REMOTE,
            remote_id=remote.id,
        )

    async def _apply_remote_deletion(self, record: SyncRecord, summary: CycleSummary) -> None:
        path = record.local_path
        local_hash: str | None = None
        if await self._local.exists(path):
            local_hash = await self._local.hash(path)

        if local_hash is not None and (
            local_hash != record.local_hash or self._queue.has_pending_edit(path)
        ):
            # Local edits outlive a remote delete; forget the remote file and re-create it.
            self._records.delete(path)
            self._queue.enqueue(SyncQueueEntry(action=QueueAction.CREATE, path=path))
            self._ledger.log(
                ActivityAction.SKIPPED,
                path,
                "Remote deletion ignored; local changes will be uploaded again.",
                source=ActivitySource.REMOTE,
                remote_id=record.remote_id,
            )
            return

        if local_hash is not None:
            await self._move_to_trash(path)
        self._records.delete(path)
        self._snapshots.delete(path)
        self._queue.remove(path)
        summary.pulled += 1
        self._ledger.log(
            ActivityAction.DELETED,
            path,
            "Moved to local trash after remote deletion.",
            source=ActivitySource.REMOTE,
            remote_id=record.remote_id,
        )

    async def _move_to_trash(self, path: str) -> str:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = f"{self.local_trash_dir}/{stamp}/{path}"
        await self._local.rename(path, target)
        return target

    async def _apply_remote_rename(
        self, record: SyncRecord, new_path: str, summary: CycleSummary
    ) -> bool:
        """Follow a remote rename locally. Returns False if the file is no longer tracked."""
        old_path = record.local_path
        if self._exclusions.is_excluded(new_path):
            self._records.delete(old_path)
            self._ledger.log(
                ActivityAction.SKIPPED,
                old_path,
                f"Remote file renamed to excluded path {new_path}; no longer synced.",
                source=ActivitySource.REMOTE,
                remote_id=record.remote_id,
            )
            return False
        if await self._local.exists(new_path):
            self._ledger.log(
                ActivityAction.SKIPPED,
                old_path,
                f"Remote rename to {new_path} skipped; a local file already exists there.",
                source=ActivitySource.REMOTE,
                remote_id=record.remote_id,
            )
            return False

        if await self._local.exists(old_path):
            await self._local.rename(old_path, new_path)
        self._records.move(old_path, new_path)
        self._snapshots.move(old_path, new_path)
        pending = self._queue.remove(old_path)
        if pending is not None:
            pending.path = new_path
            self._queue.requeue(pending)
        summary.pulled += 1
        self._ledger.log(
            ActivityAction.PULLED,
            new_path,
            f"Renamed from {old_path}.",
            source=ActivitySource.REMOTE,
            remote_id=record.remote_id,
        )
        return True

    def _remember_base(self, path: str, content: bytes) -> None:
        if is_markdown_path(path):
            self._snapshots.save(path, content.decode("utf-8", errors="surrogateescape"))

    # =========================================================================
    # Conflict resolution phase
    # =========================================================================

    async def _upload_over(self, remote_id: str, path: str, content: bytes) -> bool:
        """Upload content as the new head of a remote file.

        Returns:
            False if uploads are paused because remote storage is full.
        """
        if self._storage_full:
            return False
        keep_forever = self.settings.keep_revisions_forever and is_markdown_path(path)
        try:
            await self._call(lambda: self._remote.update_file(remote_id, content, keep_forever))
        except StorageQuotaError as e:
            self._enter_storage_full(path, e)
            return False
        return True

    async def _resolve_conflict(self, conflict: ConflictInfo, summary: CycleSummary) -> bool:
        """Apply the configured strategy.

        Returns:
            False if the conflict failed in a way worth retrying, so the
            page token must be held.
        """
        summary.conflicts += 1
        path = conflict.path
        outcome = self._resolver.resolve(conflict)

        try:
            if outcome.conflict_file is not None:
                await self._local.write(*outcome.conflict_file)

            remote_hash = conflict.remote_hash
            upload = outcome.upload_content
            uploaded = False
            if upload is not None:
                uploaded = await self._upload_over(conflict.remote_id, path, upload)
                if uploaded:
                    remote_hash = compute_content_hash(upload)

            if outcome.local_content is not None:
                await self._local.write(path, outcome.local_content)
        except (RemoteUnavailableError, AuthenticationFailedError):
            raise
        except (RemoteError, OSError) as e:
            summary.errors += 1
            permanent = _is_permanent(e)
            self._ledger.log(
                ActivityAction.ERROR,
                path,
                "Conflict resolution failed; skipped."
                if permanent
                else "Conflict resolution failed; will retry next sync.",
                error=str(e),
                remote_id=conflict.remote_id,
            )
            return permanent

        final_local = (
            outcome.local_content if outcome.local_content is not None else conflict.local_content
        )
        local_hash = compute_content_hash(final_local)
        self._queue.remove(path)

        if outcome.status is RecordStatus.CONFLICT:
            self._records.set(
                SyncRecord(
                    remote_id=conflict.remote_id,
                    local_path=path,
                    local_hash=local_hash,
                    remote_hash=remote_hash,
                    status=RecordStatus.CONFLICT,
                )
            )
        elif upload is not None and not uploaded:
            # Upload deferred by the storage-full pause.
            self._records.set(
                SyncRecord(
                    remote_id=conflict.remote_id,
                    local_path=path,
                    local_hash=local_hash,
                    remote_hash=conflict.remote_hash,
                    status=RecordStatus.PENDING_PUSH,
                )
            )
            self._queue.enqueue(
                SyncQueueEntry(action=QueueAction.UPDATE, path=path, local_hash=local_hash)
            )
            self._remember_base(path, conflict.remote_content)
        else:
            self._records.set(SyncRecord.synced(conflict.remote_id, path, local_hash))
            self._remember_base(path, final_local)
            self._resolver.settle(path)

        self._ledger.log(
            outcome.action,
            path,
            outcome.detail,
            source=ActivitySource.SYSTEM,
            remote_id=conflict.remote_id,
        )
        return True

    async def resolve_conflict_markers(
        self, path: str, strategy: MarkerStrategy | str
    ) -> int | None:
        """Resolve the conflict blocks in a flagged file by picking one side.

        Malformed markers leave the file untouched and flagged.

        Args:
            path: Vault-relative path.
            strategy: local-first or remote-first.

        Returns:
            Number of blocks resolved, or None if the markers were malformed.
        """
        path = normalize_path(path)
        text = (await self._local.read(path)).decode("utf-8", errors="surrogateescape")
        try:
            result = resolve_markers(text, strategy)
        except ConflictMarkerError as e:
            self._ledger.log(
                ActivityAction.SKIPPED,
                path,
                "Malformed conflict markers; resolve manually.",
                error=str(e),
                source=ActivitySource.LOCAL,
            )
            return None
        content = result.content.encode("utf-8", errors="surrogateescape")
        await self._local.write(path, content)
        record = self._records.get(path)
        if record is not None and record.status is RecordStatus.CONFLICT:
            record.status = RecordStatus.PENDING_PUSH
            self._records.set(record)
        self.queue_path_for_push(path)
        return result.resolved_count

    # =========================================================================
    # Push phase
    # =========================================================================

    async def _scan_local_changes(self) -> None:
        """Queue changes found by comparing the vault with the records."""
        paths = [normalize_path(p) for p in await self._local.list_files()]
        present = set(paths)

        async def inspect(path: str) -> tuple[str, str] | None:
            stat = await self._local.stat(path)
            if stat is None or self._exclusions.is_excluded(path, stat.size):
                return None
            return path, await self._local.hash(path)

        states = await run_bounded(paths, inspect, self.settings.concurrency_limit)
        local_hashes = dict(state for state in states if state is not None)

        pending = {e.path: e for e in self._queue.snapshot()}
        rename_sources = {
            e.old_path for e in pending.values() if e.action is QueueAction.RENAME and e.old_path
        }
        missing = {
            r.local_path: r
            for r in self._records.all_records()
            if r.local_path not in present
            and r.local_path not in rename_sources
            and not self._exclusions.is_excluded(r.local_path)
        }

        for path, local_hash in sorted(local_hashes.items()):
            record = self._records.get(path)
            if record is not None:
                if record.local_hash != local_hash or record.status is RecordStatus.PENDING_PUSH:
                    self._queue.enqueue(
                        SyncQueueEntry(action=QueueAction.UPDATE, path=path, local_hash=local_hash)
                    )
                continue
            if path in pending:
                continue
            source = next(
                (p for p, r in sorted(missing.items()) if r.local_hash == local_hash), None
            )
            if source is not None:
                del missing[source]
                self._queue.enqueue(
                    SyncQueueEntry(
                        action=QueueAction.RENAME,
                        path=path,
                        old_path=source,
                        local_hash=local_hash,
                    )
                )
                continue
            self._queue.enqueue(
                SyncQueueEntry(action=QueueAction.CREATE, path=path, local_hash=local_hash)
            )

        for path in sorted(missing):
            if path not in pending:
                self._queue.enqueue(SyncQueueEntry(action=QueueAction.DELETE, path=path))

    async def _push_phase(self, summary: CycleSummary, cancel: CancellationToken) -> None:
        await self._scan_local_changes()
        entries = self._queue.drain()
        for index, entry in enumerate(entries):
            if cancel.cancelled:
                for remaining in entries[index:]:
                    self._queue.requeue(remaining)
                cancel.raise_if_cancelled()
            try:
                await self._push_entry(entry, summary)
            except StorageQuotaError as e:
                self._queue.requeue(entry)
                self._enter_storage_full(entry.path, e)
            except (RemoteUnavailableError, AuthenticationFailedError):
                for remaining in entries[index:]:
                    self._queue.requeue(remaining)
                raise
            except (RemoteError, OSError) as e:
                summary.errors += 1
                self._ledger.log(
                    ActivityAction.ERROR,
                    entry.path,
                    f"Push failed after {entry.retry_count + 1} attempts; change dropped.",
                    error=str(e),
                    source=ActivitySource.LOCAL,
                )
        self._save()

    async def _push_entry(self, entry: SyncQueueEntry, summary: CycleSummary) -> None:
        if entry.action is QueueAction.DELETE:
            await self._push_delete(entry, summary)
        elif entry.action is QueueAction.RENAME:
            await self._push_rename(entry, summary)
        else:
            await self._push_upload(entry.path, entry, summary)

    async def _push_upload(self, path: str, entry: SyncQueueEntry, summary: CycleSummary) -> None:
        stat = await self._local.stat(path)
        if stat is None or self._exclusions.is_excluded(path, stat.size):
            return
        if self._storage_full:
            self._queue.requeue(entry)
            return

        content = await self._local.read(path)
        local_hash = compute_content_hash(content)
        record = self._records.get(path)
        keep_forever = self.settings.keep_revisions_forever and is_markdown_path(path)

        if record is not None:
            if record.is_synced and record.local_hash == local_hash:
                return
            if record.status is RecordStatus.CONFLICT:
                text = content.decode("utf-8", errors="surrogateescape")
                if analyze(text).has_conflict_markers:
                    logger.debug(f"{path} still has conflict markers; not uploading")
                    return
            try:
                uploaded = await self._call_for(
                    entry, lambda: self._remote.update_file(record.remote_id, content, keep_forever)
                )
                summary.updated += 1
                detail = "Uploaded local changes."
            except NotFoundError:
                logger.info(f"Remote copy of {path} is gone; uploading as new file")
                self._records.delete(path)
                uploaded = await self._create_remote(path, content, keep_forever, entry)
                summary.created += 1
                detail = "Uploaded as new file."
        else:
            uploaded = await self._create_remote(path, content, keep_forever, entry)
            summary.created += 1
            detail = "Uploaded new file."

        self._records.set(SyncRecord.synced(uploaded.id, path, local_hash))
        self._remember_base(path, content)
        self._resolver.settle(path)
        self._ledger.log(
            ActivityAction.PUSHED, path, detail, source=ActivitySource.LOCAL, remote_id=uploaded.id
        )

    async def _create_remote(
        self, path: str, content: bytes, keep_forever: bool, entry: SyncQueueEntry
    ) -> RemoteFile:
        folder, name = posixpath.split(path)
        parent_id = await self._call_for(entry, lambda: self._remote.ensure_folder(folder))
        return await self._call_for(
            entry, lambda: self._remote.create_file(name, content, parent_id, keep_forever)
        )

    async def _push_rename(self, entry: SyncQueueEntry, summary: CycleSummary) -> None:
        old_path = entry.old_path or ""
        new_path = entry.path
        record = self._records.get(old_path)
        if record is None:
            await self._push_upload(new_path, entry, summary)
            return
        if not await self._local.exists(new_path):
            return

        old_folder, old_name = posixpath.split(old_path)
        new_folder, new_name = posixpath.split(new_path)
        if old_folder != new_folder:
            parent_id = await self._call_for(entry, lambda: self._remote.ensure_folder(new_folder))
            await self._call_for(entry, lambda: self._remote.move_file(record.remote_id, parent_id))
        if old_name != new_name:
            await self._call_for(entry, lambda: self._remote.rename_file(record.remote_id, new_name))

        self._records.move(old_path, new_path)
        self._snapshots.move(old_path, new_path)
        summary.renamed += 1
        self._ledger.log(
            ActivityAction.PUSHED,
            new_path,
            f"Renamed from {old_path}.",
            source=ActivitySource.LOCAL,
            remote_id=record.remote_id,
        )

        if await self._local.hash(new_path) != record.local_hash:
            await self._push_upload(new_path, entry, summary)

    async def _push_delete(self, entry: SyncQueueEntry, summary: CycleSummary) -> None:
        path = entry.path
        record = self._records.get(path)
        if record is None or await self._local.exists(path):
            return
        try:
            await self._call_for(entry, lambda: self._remote.trash_file(record.remote_id))
        except NotFoundError:
            logger.debug(f"Remote copy of {path} already gone")
        self._records.delete(path)
        self._snapshots.delete(path)
        summary.deleted += 1
        self._ledger.log(
            ActivityAction.DELETED,
            path,
            "Moved remote file to trash.",
            source=ActivitySource.LOCAL,
            remote_id=record.remote_id,
        )

    # =========================================================================
    # Local change notifications
    # =========================================================================

    def notify_local_change(self, path: str) -> None:
        """Schedule a push for path once it has been quiet for the quiescence delay."""
        path = normalize_path(path)
        if self._exclusions.is_excluded(path):
            return
        self._debounce.schedule(path, lambda: self.queue_path_for_push(path))

    def queue_path_for_push(self, path: str) -> None:
        """Queue path for upload right away."""
        path = normalize_path(path)
        action = QueueAction.UPDATE if path in self._records else QueueAction.CREATE
        self._queue.enqueue(SyncQueueEntry(action=action, path=path))
        self._on_queued()

    def notify_local_delete(self, path: str) -> None:
        path = normalize_path(path)
        self._debounce.cancel(path)
        if self._exclusions.is_excluded(path):
            return
        if path not in self._records and path not in self._queue:
            return
        self._queue.enqueue(SyncQueueEntry(action=QueueAction.DELETE, path=path))
        self._on_queued()

    def notify_local_rename(self, old_path: str, new_path: str) -> None:
        """Queue a rename, or a create/delete when it crosses an exclusion boundary."""
        old_path = normalize_path(old_path)
        new_path = normalize_path(new_path)
        self._debounce.cancel(old_path)
        old_excluded = self._exclusions.is_excluded(old_path)
        new_excluded = self._exclusions.is_excluded(new_path)
        if old_excluded and new_excluded:
            return
        if old_excluded:
            self.queue_path_for_push(new_path)
            return
        if new_excluded:
            self.notify_local_delete(old_path)
            return
        self._queue.enqueue(
            SyncQueueEntry(action=QueueAction.RENAME, path=new_path, old_path=old_path)
        )
        self._on_queued()

    def _on_queued(self) -> None:
        if self._lock.locked():
            self._rerun_requested = True
            self._set_state(SyncState.PENDING)
        elif self._running and not self._user_paused:
            self._spawn(self.run_push_now())

    def _spawn(self, coro: Awaitable[object]) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # =========================================================================
    # Selective sync
    # =========================================================================

    async def handle_selective_sync_change(self, previous_settings: SyncSettings) -> list[str]:
        """Queue files that became eligible after a settings change.

        Call after apply_settings() with the settings in effect before it.

        Args:
            previous_settings: Settings before the change.

        Returns:
            Paths queued for upload.
        """
        previous = ExclusionEngine(previous_settings)

        sizes: dict[str, int | None] = {}
        for path in await self._local.list_files():
            stat = await self._local.stat(path)
            if stat is not None:
                sizes[normalize_path(path)] = stat.size

        queued = reconcile_selective_change(previous, self._exclusions, sizes, self._records)
        for path in queued:
            self._queue.enqueue(SyncQueueEntry(action=QueueAction.CREATE, path=path))
        if queued:
            self._on_queued()
        return queued

    def apply_settings(self, settings: SyncSettings) -> None:
        self.settings = settings
        self._exclusions = ExclusionEngine(settings)
        self._resolver = self._build_resolver(settings)
        self._cleaner.settings = settings
        self._debounce.delay = settings.push_quiescence_seconds

    async def list_sync_ignored_files(self) -> IgnoredFilesReport:
        """Combine exclusion verdicts across local and remote listings."""
        found: dict[str, tuple[IgnoredFileEntry, set[str]]] = {}

        def add(path: str, size: int | None, source: str) -> None:
            reason = self._exclusions.reason(path, size)
            if reason is None:
                return
            if path in found:
                found[path][1].add(source)
                return
            entry = IgnoredFileEntry(
                path=path,
                reason=reason,
                reason_text=self._exclusions.describe(path, reason, size),
                source=source,
            )
            found[path] = (entry, {source})

        for path in await self._local.list_files():
            stat = await self._local.stat(path)
            add(normalize_path(path), stat.size if stat else None, "local")

        warning: str | None = None
        try:
            remote_files = await self._call(self._remote.list_all_files)
        except RemoteError as e:
            warning = f"Remote listing unavailable: {e}"
            remote_files = []
        for remote in remote_files:
            if not remote.is_folder:
                add(normalize_path(remote.path), remote.size or None, "remote")

        report = IgnoredFilesReport(remote_warning=warning)
        for path in sorted(found):
            entry, sources = found[path]
            source = "both" if len(sources) > 1 else entry.source
            report.entries.append(
                IgnoredFileEntry(
                    path=entry.path,
                    reason=entry.reason,
                    reason_text=entry.reason_text,
                    source=source,
                )
            )
            report.skip_counts.add(entry.reason)
        return report

    # =========================================================================
    # Full re-sync and duplicate cleanup
    # =========================================================================

    def _full_resync(self) -> FullResync:
        return FullResync(
            self._remote,
            self._local,
            self._records,
            self._ledger,
            self._call,
            self._exclusions,
            self._remember_base,
            self.settings,
            is_storage_full=lambda: self._storage_full,
            on_storage_full=self._enter_storage_full,
        )

    async def preview_full_resync(self) -> ResyncPlan:
        """Compare every local and remote file by content hash without changing anything."""
        return await self._full_resync().plan()

    async def force_full_resync(
        self,
        progress: ProgressSink = null_progress,
        cancel: CancellationToken | None = None,
    ) -> ResyncResult | None:
        """Discard all records and reconcile both sides from scratch.

        Records and the change queue are only discarded once both sides
        have been listed; a failed listing leaves the saved state intact.

        Returns:
            ResyncResult, or None if the remote was unreachable or
            authentication failed.
        """
        cancel = cancel or CancellationToken()
        async with self._lock:
            self._set_state(SyncState.SYNCING)
            try:
                result = await self._full_resync().run(
                    progress, cancel, self._cleaner, on_reset=self._queue.clear
                )
            except RemoteUnavailableError as e:
                self._save()
                self._set_state(SyncState.OFFLINE)
                self._notify("Offline", f"Remote unreachable: {e}", NotificationType.WARNING)
                return None
            except (AuthenticationFailedError, RemoteError, OSError) as e:
                self._save()
                self._ledger.log(ActivityAction.ERROR, "", "Full re-sync failed.", error=str(e))
                self._set_state(SyncState.ERROR)
                self._notify("Full re-sync failed", str(e), NotificationType.ERROR)
                return None
            self._set_state(self._settled_state())
            if result.cancelled:
                self._ledger.log(ActivityAction.SKIPPED, "", "Sync cancelled by user.")
                self._notify(
                    "Full re-sync cancelled",
                    "Partial progress was saved.",
                    NotificationType.WARNING,
                )
            else:
                self._notify(
                    "Full re-sync complete",
                    f"{result.uploaded} uploaded, {result.downloaded} downloaded, "
                    f"{result.merged} merged, {result.adopted} already identical"
                    + (f", {result.skipped} waiting for storage." if result.skipped else "."),
                    NotificationType.INFO,
                )
            return result

    async def clean_duplicate_artifacts(
        self,
        progress: ProgressSink = null_progress,
        cancel: CancellationToken | None = None,
    ) -> DuplicateCleanupSummary | None:
        """Reconcile generated variant files with their canonical paths."""
        cancel = cancel or CancellationToken()
        async with self._lock:
            try:
                summary = await self._cleaner.run(progress, cancel)
            except SyncCancelledError as e:
                self._save()
                self._ledger.log(ActivityAction.SKIPPED, "", str(e))
                self._notify("Cleanup cancelled", str(e), NotificationType.WARNING)
                return None
            except RemoteError as e:
                self._save()
                self._notify("Cleanup failed", str(e), NotificationType.ERROR)
                return None
            self._save()
            self._notify(
                "Duplicate cleanup complete",
                f"{summary.total} duplicate artifacts reconciled.",
                NotificationType.INFO,
            )
            return summary

    async def _maybe_clean_duplicates(self, cancel: CancellationToken) -> None:
        interval = self.settings.duplicate_cleanup_interval_cycles
        if interval <= 0:
            return
        self._cycles_since_cleanup += 1
        if self._cycles_since_cleanup < interval:
            return
        self._cycles_since_cleanup = 0
        await self._cleaner.run(null_progress, cancel)
        self._snapshots.prune(self.settings.snapshot_retention_days)

    # =========================================================================
    # Revisions
    # =========================================================================

    async def list_revisions(self, path: str) -> list[RemoteRevision]:
        record = self._records.get(normalize_path(path))
        if record is None:
            raise KeyError(f"{path} is not tracked")
        return await self._call(lambda: self._remote.list_revisions(record.remote_id))

    async def restore_file_revision(self, path: str, revision_id: str) -> None:
        """Write a stored revision over the file and upload it as the new head.

        While storage is full the restored file stays local as a pending
        push.
        """
        path = normalize_path(path)
        record = self._records.get(path)
        if record is None:
            raise KeyError(f"{path} is not tracked")
        content = await self._call(
            lambda: self._remote.download_revision(record.remote_id, revision_id)
        )
        await self._local.write(path, content)
        content_hash = compute_content_hash(content)
        self._queue.remove(path)

        if await self._upload_over(record.remote_id, path, content):
            self._records.set(SyncRecord.synced(record.remote_id, path, content_hash))
            self._remember_base(path, content)
            self._resolver.settle(path)
        else:
            self._records.set(
                SyncRecord(
                    remote_id=record.remote_id,
                    local_path=path,
                    local_hash=content_hash,
                    remote_hash=record.remote_hash,
                    status=RecordStatus.PENDING_PUSH,
                )
            )
        self._save()
        self._ledger.log(
            ActivityAction.RESTORED,
            path,
            f"Restored revision {revision_id}.",
            source=ActivitySource.REMOTE,
            remote_id=record.remote_id,
        )

    # =========================================================================
    # Trash
    # =========================================================================

    @property
    def local_trash_dir(self) -> str:
        return f"{self.settings.config_dir}/{TRASH_DIR_NAME}"

    async def list_local_trash(self) -> list[tuple[str, str]]:
        """Files moved aside after remote deletions.

        Returns:
            (trash path, original vault path) pairs, newest deletion first.
        """
        prefix = f"{self.local_trash_dir}/"
        found = []
        for path in await self._local.list_files():
            path = normalize_path(path)
            if not path.startswith(prefix):
                continue
            stamp, _, original = path[len(prefix) :].partition("/")
            if original:
                found.append((stamp, path, original))
        found.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [(path, original) for _, path, original in found]

    async def list_remote_trash(self) -> list[RemoteFile]:
        return await self._call(self._remote.list_trashed_files)

    async def _free_restore_path(self, path: str) -> str:
        if escapes_root(path):
            raise ValueError(f"Restore target leaves the vault: {path}")
        if not await self._local.exists(path):
            return path
        return restored_file_path(path, datetime.now())

    async def restore_local_trash_file(self, trash_path: str, destination_path: str) -> str:
        """Move a file out of the local trash and queue it for upload.

        An occupied destination gets a `stem.restored-<ts>.ext` sibling.

        Returns:
            Vault path the file was restored to.
        """
        trash_path = normalize_path(trash_path)
        if not trash_path.startswith(f"{self.local_trash_dir}/"):
            raise ValueError(f"Not in the local trash: {trash_path}")
        target = await self._free_restore_path(normalize_path(destination_path))
        await self._local.rename(trash_path, target)

        record = self._records.get(target)
        if record is not None:
            record.local_hash = await self._local.hash(target)
            record.status = RecordStatus.PENDING_PUSH
            self._records.set(record)
            self._save()
        self.queue_path_for_push(target)
        self._ledger.log(
            ActivityAction.RESTORED,
            target,
            "Restored from local trash.",
            source=ActivitySource.LOCAL,
            remote_id=record.remote_id if record else None,
        )
        return target

    async def restore_from_remote_trash(
        self, file_id: str, preferred_path: str | None = None
    ) -> str:
        """Untrash a remote file and download it into the vault.

        Args:
            file_id: Remote id of the trashed file.
            preferred_path: Where to put it; defaults to its remote path.

        Returns:
            Vault path the file was restored to.
        """
        remote = await self._call(lambda: self._remote.get_file(file_id))
        target = await self._free_restore_path(normalize_path(preferred_path or remote.path))
        await self._call(lambda: self._remote.untrash_file(file_id))
        content = await self._call(lambda: self._remote.download_file(file_id))

        # Keep the remote path in step with the local one.
        old_folder, old_name = split_path(remote.path)
        folder, name = split_path(target)
        if folder != old_folder:
            parent_id = await self._call(lambda: self._remote.ensure_folder(folder))
            await self._call(lambda: self._remote.move_file(file_id, parent_id))
        if name != old_name:
            await self._call(lambda: self._remote.rename_file(file_id, name))

        await self._local.write(target, content)
        self._records.set(SyncRecord.synced(file_id, target, compute_content_hash(content)))
        self._remember_base(target, content)
        self._save()
        self._ledger.log(
            ActivityAction.RESTORED,
            target,
            "Restored from remote trash.",
            source=ActivitySource.REMOTE,
            remote_id=file_id,
        )
        return target

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Run an initial sync, then pull periodically and push on quiescence."""
        if self._running:
            return
        self._running = True
        self._timer_task = asyncio.create_task(self._pull_timer())

    async def _pull_timer(self) -> None:
        while self._running:
            await self.run_sync()
            await asyncio.sleep(self.settings.pull_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        self._debounce.cancel_all()
        if self._timer_task is not None:
            self._timer_task.cancel()
            await asyncio.gather(self._timer_task, return_exceptions=True)
            self._timer_task = None
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._save()

    def close(self) -> None:
        self._save()
        self._records.close()
        self._queue.close()
        self._ledger.close()
        self._snapshots.close()
