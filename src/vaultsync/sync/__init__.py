"""Sync engine and its collaborators.

Architecture:
    VaultWatcher → SyncEngine (debounce → ChangeQueue) → RemoteStore
    RemoteStore change feed → SyncEngine pull → ConflictResolver

Components:
- **SyncEngine**: Pull, resolve and push cycles; sync state machine
- **SyncRecordStore**: Durable path → SyncRecord map plus page token
- **ChangeQueue**: Coalescing queue of local actions, persisted in SQLite
- **ActivityLedger**: Append-only history of sync actions
- **ConflictResolver**: Strategy tables for markdown and binary conflicts
- **SnapshotStore**: Merge bases for markdown files
- **FullResync / DuplicateArtifactCleaner**: Recovery operations
- **VaultWatcher**: watchdog observer feeding the engine

RemoteStore, LocalStore and TokenProvider are protocols; hosts supply
the cloud adapter and the auth layer.
"""

from vaultsync.sync.duplicates import DuplicateArtifactCleaner, choose_primary
from vaultsync.sync.engine import CycleMode, SyncEngine
from vaultsync.sync.errors import (
    AuthenticationFailedError,
    NotFoundError,
    PermanentRemoteError,
    RemoteError,
    RemoteUnavailableError,
    StorageQuotaError,
    SyncCancelledError,
    SyncError,
    TransientRemoteError,
    UnauthorizedError,
)
from vaultsync.sync.ledger import ActivityLedger
from vaultsync.sync.local import FileSystemLocalStore, LocalFileStat, LocalStore
from vaultsync.sync.merge import deep_merge_json, three_way_merge
from vaultsync.sync.notifications import Notification, NotificationType, Notifier, log_notifier
from vaultsync.sync.queue import ChangeQueue
from vaultsync.sync.records import SyncRecordStore
from vaultsync.sync.remote import (
    ChangePage,
    RateLimitSnapshot,
    RemoteChange,
    RemoteFile,
    RemoteRevision,
    RemoteStore,
    StorageQuota,
    TokenProvider,
)
from vaultsync.sync.resolver import ConflictOutcome, ConflictResolver, is_conflict
from vaultsync.sync.resync import FullResync, default_conflict_action
from vaultsync.sync.retry import retry_with_backoff, with_auth_refresh
from vaultsync.sync.snapshots import SnapshotStore
from vaultsync.sync.types import (
    ActivityLogEntry,
    CancellationToken,
    ConflictInfo,
    CycleSummary,
    DuplicateCleanupSummary,
    IgnoredFileEntry,
    IgnoredFilesReport,
    MergeResult,
    ProgressSink,
    ResyncConflict,
    ResyncPlan,
    ResyncResult,
    SyncQueueEntry,
    SyncRecord,
)
from vaultsync.sync.watcher import VaultEventHandler, VaultWatcher

__all__ = [
    # Engine
    "CycleMode",
    "SyncEngine",
    # Stores
    "ActivityLedger",
    "ChangeQueue",
    "SnapshotStore",
    "SyncRecordStore",
    # Local / remote
    "ChangePage",
    "FileSystemLocalStore",
    "LocalFileStat",
    "LocalStore",
    "RateLimitSnapshot",
    "RemoteChange",
    "RemoteFile",
    "RemoteRevision",
    "RemoteStore",
    "StorageQuota",
    "TokenProvider",
    # Conflicts
    "ConflictOutcome",
    "ConflictResolver",
    "deep_merge_json",
    "is_conflict",
    "three_way_merge",
    # Recovery
    "DuplicateArtifactCleaner",
    "FullResync",
    "choose_primary",
    "default_conflict_action",
    # Retry
    "retry_with_backoff",
    "with_auth_refresh",
    # Notifications
    "Notification",
    "NotificationType",
    "Notifier",
    "log_notifier",
    # Watcher
    "VaultEventHandler",
    "VaultWatcher",
    # Errors
    "AuthenticationFailedError",
    "NotFoundError",
    "PermanentRemoteError",
    "RemoteError",
    "RemoteUnavailableError",
    "StorageQuotaError",
    "SyncCancelledError",
    "SyncError",
    "TransientRemoteError",
    "UnauthorizedError",
    # Types
    "ActivityLogEntry",
    "CancellationToken",
    "ConflictInfo",
    "CycleSummary",
    "DuplicateCleanupSummary",
    "IgnoredFileEntry",
    "IgnoredFilesReport",
    "MergeResult",
    "ProgressSink",
    "ResyncConflict",
    "ResyncPlan",
    "ResyncResult",
    "SyncQueueEntry",
    "SyncRecord",
]
