"""Queue of local changes waiting to be pushed.

This module provides:
- ChangeQueue: Path-keyed queue that coalesces actions per path

Entries are deduplicated by path: a new action for a path that already
has a pending entry is merged into it, so the queue always holds the net
effect of a burst of edits:

    create + update  -> create
    create + delete  -> (nothing) when the path never synced, else delete
    update + delete  -> delete
    delete + create  -> update (the path is still tracked remotely)
    rename + update  -> rename carrying the new hash
    rename + delete  -> delete of the original path

Persistence (SQLite):
    With a persistence path every mutation is written through, so a queue
    built while offline survives a restart and is replayed on the next
    cycle. The filesystem stays the source of truth; a full vault scan
    re-detects anything lost in a crash between memory and disk.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path

from vaultsync.core.types import QueueAction
from vaultsync.sync.types import SyncQueueEntry

logger = logging.getLogger(__name__)


class ChangeQueue:
    """Pending local actions, one entry per path.

    Attributes:
        persistence_path: Optional SQLite path for the offline queue.
        is_tracked: Tells whether a path has a sync record. A create
            followed by a delete only cancels out for untracked paths.
    """

    def __init__(
        self,
        persistence_path: Path | None = None,
        is_tracked: Callable[[str], bool] | None = None,
    ) -> None:
        self._entries: dict[str, SyncQueueEntry] = {}
        self._is_tracked = is_tracked or (lambda path: False)
        self._persistence_path = persistence_path
        self._db: sqlite3.Connection | None = None

        if persistence_path:
            self._init_persistence()
            self._load_from_persistence()

    # === Persistence ===

    def _init_persistence(self) -> None:
        assert self._persistence_path is not None
        self._persistence_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(self._persistence_path))
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                path TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                old_path TEXT,
                local_hash TEXT,
                timestamp REAL NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._db.commit()
        logger.debug("Initialized change queue persistence at %s", self._persistence_path)

    def _load_from_persistence(self) -> None:
        assert self._db is not None
        rows = self._db.execute(
            "SELECT path, action, old_path, local_hash, timestamp, retry_count FROM sync_queue"
        ).fetchall()
        for path, action, old_path, local_hash, timestamp, retry_count in rows:
            self._entries[path] = SyncQueueEntry(
                action=QueueAction(action),
                path=path,
                old_path=old_path,
                local_hash=local_hash,
                timestamp=timestamp,
                retry_count=retry_count,
            )
        if rows:
            logger.info(f"Restored {len(rows)} queued changes from previous session")

    def _persist(self, entry: SyncQueueEntry) -> None:
        if self._db is None:
            return
        self._db.execute(
            """
            INSERT OR REPLACE INTO sync_queue
                (path, action, old_path, local_hash, timestamp, retry_count)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.path,
                entry.action.value,
                entry.old_path,
                entry.local_hash,
                entry.timestamp,
                entry.retry_count,
            ),
        )
        self._db.commit()

    def _unpersist(self, path: str) -> None:
        if self._db is None:
            return
        self._db.execute("DELETE FROM sync_queue WHERE path = ?", (path,))
        self._db.commit()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    # === Queue operations ===

    def _store(self, entry: SyncQueueEntry) -> None:
        self._entries[entry.path] = entry
        self._persist(entry)

    def _discard(self, path: str) -> SyncQueueEntry | None:
        entry = self._entries.pop(path, None)
        if entry is not None:
            self._unpersist(path)
        return entry

    def enqueue(self, entry: SyncQueueEntry) -> SyncQueueEntry | None:
        """Add an action, coalescing with any pending entry for the same path.

        Args:
            entry: New local action.

        Returns:
            The entry now pending for the path, or None if the actions
            cancelled out.
        """
        if entry.action is QueueAction.RENAME:
            return self._enqueue_rename(entry)

        existing = self._entries.get(entry.path)
        if existing is None:
            self._store(entry)
            return entry

        merged: SyncQueueEntry | None
        if entry.action is QueueAction.DELETE:
            if existing.action is QueueAction.CREATE:
                merged = entry if self._is_tracked(entry.path) else None
            elif existing.action is QueueAction.RENAME and existing.old_path:
                self._discard(existing.path)
                merged = SyncQueueEntry(
                    action=QueueAction.DELETE,
                    path=existing.old_path,
                    timestamp=entry.timestamp,
                )
                self._store(merged)
                return merged
            else:
                merged = entry
        elif entry.action is QueueAction.UPDATE:
            if existing.action in (QueueAction.CREATE, QueueAction.RENAME):
                merged = SyncQueueEntry(
                    action=existing.action,
                    path=existing.path,
                    old_path=existing.old_path,
                    local_hash=entry.local_hash,
                    timestamp=entry.timestamp,
                )
            else:
                merged = entry
        else:
            if existing.action is QueueAction.DELETE:
                merged = SyncQueueEntry(
                    action=QueueAction.UPDATE,
                    path=entry.path,
                    local_hash=entry.local_hash,
                    timestamp=entry.timestamp,
                )
            else:
                merged = entry

        if merged is None:
            self._discard(entry.path)
            logger.debug(f"Queued create and delete cancelled out for {entry.path}")
            return None
        self._store(merged)
        return merged

    def _enqueue_rename(self, entry: SyncQueueEntry) -> SyncQueueEntry | None:
        old_path = entry.old_path
        if not old_path or old_path == entry.path:
            return None
        existing = self._discard(old_path)
        if existing is None:
            merged = entry
        elif existing.action is QueueAction.CREATE:
            merged = SyncQueueEntry(
                action=QueueAction.CREATE,
                path=entry.path,
                local_hash=entry.local_hash or existing.local_hash,
                timestamp=entry.timestamp,
            )
        elif existing.action is QueueAction.RENAME and existing.old_path:
            if existing.old_path == entry.path:
                # Renamed back to where it started.
                merged = SyncQueueEntry(
                    action=QueueAction.UPDATE,
                    path=entry.path,
                    local_hash=entry.local_hash or existing.local_hash,
                    timestamp=entry.timestamp,
                )
            else:
                merged = SyncQueueEntry(
                    action=QueueAction.RENAME,
                    path=entry.path,
                    old_path=existing.old_path,
                    local_hash=entry.local_hash or existing.local_hash,
                    timestamp=entry.timestamp,
                )
        else:
            merged = SyncQueueEntry(
                action=QueueAction.RENAME,
                path=entry.path,
                old_path=old_path,
                local_hash=entry.local_hash or existing.local_hash,
                timestamp=entry.timestamp,
            )
        self._store(merged)
        return merged

    def get(self, path: str) -> SyncQueueEntry | None:
        return self._entries.get(path)

    def remove(self, path: str) -> SyncQueueEntry | None:
        return self._discard(path)

    def drain(self) -> list[SyncQueueEntry]:
        """Remove and return every entry in timestamp order."""
        entries = sorted(self._entries.values(), key=lambda e: (e.timestamp, e.path))
        self._entries.clear()
        if self._db is not None:
            self._db.execute("DELETE FROM sync_queue")
            self._db.commit()
        return entries

    def requeue(self, entry: SyncQueueEntry) -> bool:
        """Put an unprocessed entry back unless a newer one arrived meanwhile.

        Returns:
            True if the entry was re-inserted.
        """
        if entry.path in self._entries:
            return False
        self._store(entry)
        return True

    def has_pending_edit(self, path: str) -> bool:
        """True if a create, update or rename is waiting for this path."""
        entry = self._entries.get(path)
        return entry is not None and entry.action is not QueueAction.DELETE

    def snapshot(self) -> list[SyncQueueEntry]:
        """Copies of the pending entries in timestamp order."""
        return [
            SyncQueueEntry(
                action=e.action,
                path=e.path,
                old_path=e.old_path,
                local_hash=e.local_hash,
                timestamp=e.timestamp,
                retry_count=e.retry_count,
            )
            for e in sorted(self._entries.values(), key=lambda e: (e.timestamp, e.path))
        ]

    def clear(self) -> None:
        self.drain()

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries
