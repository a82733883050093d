"""Shared types and dataclasses for sync operations.

This module provides:
- SyncRecord: Persistent per-file sync state
- SyncQueueEntry: Pending local action
- ConflictInfo: Conflict detected during a pull
- ConflictRegion, MergeResult: Three-way merge output
- ActivityLogEntry: Immutable ledger entry
- CycleSummary, DuplicateCleanupSummary: Operation counters
- ResyncPlan, ResyncConflict: Full re-sync preview
- IgnoredFileEntry, IgnoredFilesReport: Debug listing of skipped files
- CancellationToken, ProgressSink: Controls for long-running operations
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from vaultsync.core.exclusions import SkipCounts
from vaultsync.core.types import (
    ActivityAction,
    ActivitySource,
    ExclusionReason,
    QueueAction,
    RecordStatus,
)
from vaultsync.sync.errors import SyncCancelledError

if TYPE_CHECKING:
    from vaultsync.sync.remote import RemoteFile


# =============================================================================
# Records and queue
# =============================================================================


@dataclass
class SyncRecord:
    """Sync state of one tracked file.

    Attributes:
        remote_id: Identifier of the file in the remote store.
        local_path: Vault-relative path.
        local_hash: Content hash of the local file at last sync.
        remote_hash: Content hash of the remote file at last sync.
        last_synced: Epoch seconds of the last successful transfer.
        status: Current status; SYNCED exactly when both hashes match.
    """

    remote_id: str
    local_path: str
    local_hash: str
    remote_hash: str
    last_synced: float = field(default_factory=time.time)
    status: RecordStatus = RecordStatus.SYNCED

    def __post_init__(self) -> None:
        self.status = RecordStatus(self.status)

    @classmethod
    def synced(cls, remote_id: str, path: str, content_hash: str) -> SyncRecord:
        """Record for a file whose local and remote content are identical."""
        return cls(
            remote_id=remote_id,
            local_path=path,
            local_hash=content_hash,
            remote_hash=content_hash,
            status=RecordStatus.SYNCED,
        )

    @property
    def is_synced(self) -> bool:
        return self.status is RecordStatus.SYNCED


@dataclass
class SyncQueueEntry:
    """A local action waiting to be pushed.

    Attributes:
        action: What happened locally.
        path: Vault-relative path (the new path for renames).
        old_path: Previous path, for renames only.
        local_hash: Content hash when queued, if known.
        timestamp: When the action was queued.
        retry_count: Failed push attempts so far.
    """

    action: QueueAction
    path: str
    old_path: str | None = None
    local_hash: str | None = None
    timestamp: float = field(default_factory=time.time)
    retry_count: int = 0

    def __post_init__(self) -> None:
        self.action = QueueAction(self.action)


# =============================================================================
# Conflicts and merging
# =============================================================================


@dataclass
class ConflictInfo:
    """Conflict detected while applying a remote change.

    Attributes:
        path: Vault-relative path of the conflicted file.
        remote_id: Remote file identifier.
        local_hash: Hash of the current local content.
        remote_hash: Hash of the current remote content.
        base_hash: Hash recorded at last sync.
        local_modified: Local modification time (epoch seconds).
        remote_modified: Remote modification time (epoch seconds).
        local_content: Current local bytes.
        remote_content: Current remote bytes.
        resolution: Name of the strategy that handled it, once resolved.
    """

    path: str
    remote_id: str
    local_hash: str
    remote_hash: str
    base_hash: str | None
    local_modified: float
    remote_modified: float
    local_content: bytes = field(default=b"", repr=False)
    remote_content: bytes = field(default=b"", repr=False)
    resolution: str | None = None


@dataclass(frozen=True)
class ConflictRegion:
    """One overlapping hunk in a three-way merge (1-based, inclusive lines)."""

    start_line: int
    end_line: int
    local_text: str
    remote_text: str


@dataclass(frozen=True)
class MergeResult:
    """Output of a three-way text merge."""

    content: str
    has_conflicts: bool = False
    conflict_count: int = 0
    regions: tuple[ConflictRegion, ...] = ()


# =============================================================================
# Activity ledger
# =============================================================================


@dataclass(frozen=True)
class ActivityLogEntry:
    """Immutable record of one sync action."""

    id: str
    timestamp: float
    action: ActivityAction
    path: str
    detail: str
    error: str | None = None
    source: ActivitySource = ActivitySource.SYSTEM
    remote_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "action": self.action.value,
            "path": self.path,
            "detail": self.detail,
            "error": self.error,
            "source": self.source.value,
            "remote_id": self.remote_id,
        }


# =============================================================================
# Operation results
# =============================================================================


@dataclass
class CycleSummary:
    """Counters for one sync cycle."""

    pulled: int = 0
    created: int = 0
    updated: int = 0
    renamed: int = 0
    deleted: int = 0
    conflicts: int = 0
    errors: int = 0

    @property
    def changed(self) -> int:
        """Number of files transferred or modified in either direction."""
        return self.pulled + self.created + self.updated + self.renamed + self.deleted

    def merge(self, other: CycleSummary) -> None:
        self.pulled += other.pulled
        self.created += other.created
        self.updated += other.updated
        self.renamed += other.renamed
        self.deleted += other.deleted
        self.conflicts += other.conflicts
        self.errors += other.errors

    def describe(self) -> str:
        parts = [
            f"{self.pulled} pulled",
            f"{self.created} created",
            f"{self.updated} updated",
            f"{self.renamed} renamed",
            f"{self.deleted} deleted",
        ]
        if self.conflicts:
            parts.append(f"{self.conflicts} conflicts")
        if self.errors:
            parts.append(f"{self.errors} errors")
        return ", ".join(parts)


@dataclass
class DuplicateCleanupSummary:
    """Counters for one duplicate-artifact cleanup pass."""

    remote_trashed: int = 0
    remote_merged: int = 0
    remote_renamed: int = 0
    local_removed: int = 0
    local_merged: int = 0
    local_renamed: int = 0

    @property
    def total(self) -> int:
        return (
            self.remote_trashed
            + self.remote_merged
            + self.remote_renamed
            + self.local_removed
            + self.local_merged
            + self.local_renamed
        )


@dataclass
class ResyncConflict:
    """A path present on both sides with different content."""

    path: str
    remote: RemoteFile
    action: str


@dataclass
class ResyncPlan:
    """Preview of a full re-sync. Every list is sorted by path."""

    local_count: int = 0
    remote_count: int = 0
    uploads: list[str] = field(default_factory=list)
    downloads: list[RemoteFile] = field(default_factory=list)
    conflicts: list[ResyncConflict] = field(default_factory=list)
    identical: list[RemoteFile] = field(default_factory=list)


@dataclass
class ResyncResult:
    """Outcome of a forced full re-sync."""

    plan: ResyncPlan
    uploaded: int = 0
    downloaded: int = 0
    merged: int = 0
    adopted: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False
    cleanup: DuplicateCleanupSummary | None = None


@dataclass(frozen=True)
class IgnoredFileEntry:
    """A file that sync skips, with the reason."""

    path: str
    reason: ExclusionReason
    reason_text: str
    source: str


@dataclass
class IgnoredFilesReport:
    """Ignored files across local and remote listings."""

    entries: list[IgnoredFileEntry] = field(default_factory=list)
    remote_warning: str | None = None
    skip_counts: SkipCounts = field(default_factory=SkipCounts)


# =============================================================================
# Cancellation and progress
# =============================================================================


class CancellationToken:
    """Cooperative cancellation flag checked between file-level steps."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        """Raise SyncCancelledError once cancel() has been called."""
        if self._cancelled:
            raise SyncCancelledError()


class ProgressSink(Protocol):
    """Receives progress of a long-running operation."""

    def __call__(self, message: str, done: int, total: int) -> None: ...


def null_progress(message: str, done: int, total: int) -> None:
    """ProgressSink that discards updates."""


