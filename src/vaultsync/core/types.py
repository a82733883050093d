"""Shared types for vaultsync.

This module defines the enums used across the exclusion rules, the
conflict resolver, the sync engine and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """Overall state of the sync engine."""

    IDLE = "idle"
    SYNCING = "syncing"
    PENDING = "pending"
    OFFLINE = "offline"
    ERROR = "error"
    CONFLICT = "conflict"
    PAUSED = "paused"


class PauseReason(str, Enum):
    """Why the engine is paused."""

    USER = "user"
    STORAGE_FULL = "storage-full"


class RecordStatus(str, Enum):
    """Sync status of a single tracked file."""

    SYNCED = "synced"
    PENDING_PUSH = "pending-push"
    PENDING_PULL = "pending-pull"
    CONFLICT = "conflict"


class QueueAction(str, Enum):
    """Local action waiting to be pushed."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"


class ActivityAction(str, Enum):
    """Kind of activity ledger entry."""

    PUSHED = "pushed"
    PULLED = "pulled"
    MERGED = "merged"
    CONFLICT = "conflict"
    DELETED = "deleted"
    RESTORED = "restored"
    ERROR = "error"
    SKIPPED = "skipped"


class ActivitySource(str, Enum):
    """Side that originated an activity entry."""

    LOCAL = "local"
    REMOTE = "remote"
    SYSTEM = "system"


class MarkdownStrategy(str, Enum):
    """Conflict strategy for markdown notes."""

    AUTO_MERGE = "auto-merge"
    CONFLICT_FILE = "conflict-file"
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"


class BinaryStrategy(str, Enum):
    """Conflict strategy for non-text files."""

    LAST_MODIFIED_WINS = "last-modified-wins"
    CONFLICT_FILE = "conflict-file"


class MarkerStrategy(str, Enum):
    """Which side of a conflict marker block to keep."""

    LOCAL_FIRST = "local-first"
    REMOTE_FIRST = "remote-first"


class FileCategory(str, Enum):
    """Selective-sync category derived from the file extension."""

    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    PDF = "pdf"
    OTHER = "other"


class ExclusionReason(str, Enum):
    """Why a path does not participate in sync.

    Members are declared in evaluation priority order.
    """

    HARD_EXCLUDED = "hard-excluded"
    EXCLUDED_FOLDER = "excluded-folder"
    VAULT_CONFIG_DISABLED = "vault-config-disabled"
    TYPE_DISABLED = "type-disabled"
    FILE_TOO_LARGE = "file-too-large"
