"""Exceptions raised by the sync engine and its collaborators.

RemoteStore implementations translate transport failures into this
hierarchy so the engine can decide what to retry:
- TransientRemoteError: network failures, 5xx and rate limiting, retried
- PermanentRemoteError: 4xx validation failures, never retried
- StorageQuotaError: quota exhausted, pauses uploads
- UnauthorizedError: 401, retried once after a forced token refresh
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for sync errors."""


class RemoteError(SyncError):
    """Error reported by the remote store.

    Attributes:
        message: Human-readable error.
        status_code: HTTP status code when known.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Failure worth retrying with backoff (network, 5xx, 429)."""


class RemoteUnavailableError(TransientRemoteError):
    """The remote cannot be reached at all."""


class PermanentRemoteError(RemoteError):
    """Failure that will not go away on retry (4xx)."""


class NotFoundError(PermanentRemoteError):
    """Remote file does not exist (404)."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message, 404)


class StorageQuotaError(PermanentRemoteError):
    """Remote storage quota exhausted (403 storageQuotaExceeded)."""

    def __init__(self, message: str = "Storage quota exceeded") -> None:
        super().__init__(message, 403)


class UnauthorizedError(RemoteError):
    """Access token rejected (401)."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, 401)


class AuthenticationFailedError(SyncError):
    """Authentication still fails after a forced token refresh."""


class SyncCancelledError(SyncError):
    """A long-running operation was cancelled by the user."""

    def __init__(self, message: str = "Sync cancelled by user.") -> None:
        super().__init__(message)
