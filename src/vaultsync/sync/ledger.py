"""Append-only activity ledger.

This module provides:
- ActivityLedger: Bounded, persisted log of sync actions

Entries are immutable once written. The ledger keeps the newest
MAX_ENTRIES entries and prunes older ones on append.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from pathlib import Path

from vaultsync.core.types import ActivityAction, ActivitySource
from vaultsync.sync.types import ActivityLogEntry

logger = logging.getLogger(__name__)

MAX_ENTRIES = 1000

# Actions that mean a path is back in a consistent state after a conflict.
_RESOLVING_ACTIONS = frozenset(
    {ActivityAction.MERGED, ActivityAction.PUSHED, ActivityAction.PULLED, ActivityAction.DELETED}
)


class ActivityLedger:
    """Append-only log of sync actions, newest first on read."""

    def __init__(self, db_path: Path | None = None, max_entries: int = MAX_ENTRIES) -> None:
        self._max_entries = max_entries
        self._entries: list[ActivityLogEntry] = []
        self._db: sqlite3.Connection | None = None
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = sqlite3.connect(str(db_path))
            self._db.execute("""
                CREATE TABLE IF NOT EXISTS activity_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    timestamp REAL NOT NULL,
                    action TEXT NOT NULL,
                    path TEXT NOT NULL,
                    detail TEXT NOT NULL,
                    error TEXT,
                    source TEXT NOT NULL,
                    remote_id TEXT
                )
            """)
            self._db.commit()
            self._load()

    def _load(self) -> None:
        assert self._db is not None
        rows = self._db.execute(
            "SELECT id, timestamp, action, path, detail, error, source, remote_id "
            "FROM activity_log ORDER BY seq DESC LIMIT ?",
            (self._max_entries,),
        ).fetchall()
        self._entries = [
            ActivityLogEntry(
                id=row[0],
                timestamp=row[1],
                action=ActivityAction(row[2]),
                path=row[3],
                detail=row[4],
                error=row[5],
                source=ActivitySource(row[6]),
                remote_id=row[7],
            )
            for row in reversed(rows)
        ]

    def log(
        self,
        action: ActivityAction,
        path: str,
        detail: str,
        error: str | None = None,
        source: ActivitySource = ActivitySource.SYSTEM,
        remote_id: str | None = None,
    ) -> ActivityLogEntry:
        """Append an entry.

        Args:
            action: Kind of action.
            path: Vault-relative path the action applies to.
            detail: Human-readable description.
            error: Error message for failed actions.
            source: Side that originated the action.
            remote_id: Remote file identifier, when known.

        Returns:
            The new entry.
        """
        entry = ActivityLogEntry(
            id=uuid.uuid4().hex,
            timestamp=time.time(),
            action=action,
            path=path,
            detail=detail,
            error=error,
            source=source,
            remote_id=remote_id,
        )
        self._entries.append(entry)
        overflow = len(self._entries) - self._max_entries
        if overflow > 0:
            del self._entries[:overflow]

        if self._db is not None:
            self._db.execute(
                "INSERT INTO activity_log "
                "(id, timestamp, action, path, detail, error, source, remote_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.timestamp,
                    entry.action.value,
                    entry.path,
                    entry.detail,
                    entry.error,
                    entry.source.value,
                    entry.remote_id,
                ),
            )
            self._db.execute(
                "DELETE FROM activity_log WHERE seq NOT IN "
                "(SELECT seq FROM activity_log ORDER BY seq DESC LIMIT ?)",
                (self._max_entries,),
            )
            self._db.commit()

        if action is ActivityAction.ERROR:
            logger.error(f"{path}: {detail} ({error})")
        else:
            logger.debug(f"[{action.value}] {path}: {detail}")
        return entry

    def entries(self) -> list[ActivityLogEntry]:
        """All retained entries, newest first."""
        return list(reversed(self._entries))

    def recent(self, limit: int) -> list[ActivityLogEntry]:
        return self.entries()[:limit]

    def unresolved_conflict_paths(self) -> list[str]:
        """Paths whose latest conflict has no later resolving entry."""
        open_paths: set[str] = set()
        for entry in self._entries:
            if entry.action is ActivityAction.CONFLICT:
                open_paths.add(entry.path)
            elif entry.action in _RESOLVING_ACTIONS:
                open_paths.discard(entry.path)
        return sorted(open_paths)

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def __len__(self) -> int:
        return len(self._entries)
