"""Remote store interface consumed by the sync engine.

This module provides:
- RemoteFile, RemoteChange, ChangePage: Remote metadata types
- RemoteRevision, StorageQuota, RateLimitSnapshot: Informational types
- RemoteStore: Protocol the cloud API adapter implements
- TokenProvider: Protocol the auth layer implements

Transport, pagination of raw API responses and folder-id resolution are
the adapter's job. Paths exposed here are vault-relative.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DEFAULT_DAILY_QUOTA = 100_000
RATE_LIMIT_WARNING_THRESHOLD = 50


@dataclass
class RemoteFile:
    """Metadata for a file in the remote store.

    Attributes:
        id: Remote identifier.
        path: Vault-relative path.
        modified_time: Modification time in epoch seconds.
        content_hash: Hash in the same scheme as LocalStore.hash, if known.
        size: Size in bytes.
        mime_type: Remote MIME type.
        trashed: Whether the file is in the remote trash.
        parent_id: Identifier of the containing folder.
    """

    id: str
    path: str
    modified_time: float = 0.0
    content_hash: str | None = None
    size: int = 0
    mime_type: str = "application/octet-stream"
    trashed: bool = False
    parent_id: str | None = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFile:
        """Create from an adapter response dict."""
        return cls(
            id=str(data["id"]),
            path=data["path"],
            modified_time=float(data.get("modified_time", 0.0)),
            content_hash=data.get("content_hash"),
            size=int(data.get("size", 0)),
            mime_type=data.get("mime_type", "application/octet-stream"),
            trashed=bool(data.get("trashed", False)),
            parent_id=data.get("parent_id"),
        )


@dataclass
class RemoteChange:
    """One entry of the incremental change feed."""

    file_id: str
    removed: bool = False
    file: RemoteFile | None = None


@dataclass
class ChangePage:
    """A page of the change feed.

    Attributes:
        changes: Changes on this page.
        next_page_token: Cursor for the next page, None on the last page.
        new_start_page_token: Cursor to store for the next cycle, set on
            the last page.
    """

    changes: list[RemoteChange] = field(default_factory=list)
    next_page_token: str | None = None
    new_start_page_token: str | None = None


@dataclass
class RemoteRevision:
    """A stored revision of a remote file."""

    id: str
    modified_time: float
    size: int = 0
    keep_forever: bool = False


@dataclass
class StorageQuota:
    """Remote storage usage in bytes; limit is None for unlimited plans."""

    used: int
    limit: int | None = None

    @property
    def available(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)


@dataclass
class RateLimitSnapshot:
    """API usage counters reported by the remote adapter."""

    requests_today: int = 0
    projected_requests_today: int = 0
    estimated_daily_quota: int = DEFAULT_DAILY_QUOTA
    backoff_until: float | None = None
    reset_at: float | None = None

    @property
    def should_warn(self) -> bool:
        return self.requests_today >= RATE_LIMIT_WARNING_THRESHOLD


class RemoteStore(Protocol):
    """Cloud file store scoped to one vault folder.

    Implementations raise the errors in vaultsync.sync.errors.
    """

    async def get_start_page_token(self) -> str: ...

    async def list_changed_files(self, page_token: str) -> ChangePage: ...

    async def list_all_files(self) -> list[RemoteFile]: ...

    async def get_file(self, file_id: str) -> RemoteFile: ...

    async def download_file(self, file_id: str) -> bytes: ...

    async def ensure_folder(self, folder_path: str) -> str: ...

    async def create_file(
        self, name: str, content: bytes, parent_id: str, keep_forever: bool = False
    ) -> RemoteFile: ...

    async def update_file(
        self, file_id: str, content: bytes, keep_forever: bool = False
    ) -> RemoteFile: ...

    async def trash_file(self, file_id: str) -> None: ...

    async def list_trashed_files(self) -> list[RemoteFile]: ...

    async def untrash_file(self, file_id: str) -> RemoteFile: ...

    async def rename_file(self, file_id: str, name: str) -> RemoteFile: ...

    async def move_file(self, file_id: str, new_parent_id: str) -> RemoteFile: ...

    async def list_revisions(self, file_id: str) -> list[RemoteRevision]: ...

    async def download_revision(self, file_id: str, revision_id: str) -> bytes: ...

    async def get_storage_quota(self) -> StorageQuota: ...

    def get_rate_limit_snapshot(self) -> RateLimitSnapshot: ...


class TokenProvider(Protocol):
    """Source of access tokens for the remote store."""

    async def get_access_token(self) -> str: ...

    async def refresh_after_unauthorized(self) -> str: ...
