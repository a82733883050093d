"""Merge bases for three-way merges.

This module provides:
- SnapshotStore: Last synced text of each markdown file

Whenever a markdown file is synced, its text is stored here as the
common ancestor for the next three-way merge. Content is gzip-compressed
and snapshots older than the retention period are pruned.

Text is encoded with `surrogateescape`, the same error handler the engine
decodes file bytes with, so notes that are not valid UTF-8 round-trip
byte for byte.
"""

from __future__ import annotations

import gzip
import logging
import sqlite3
import time
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
SECONDS_PER_DAY = 24 * 60 * 60


class SnapshotStore:
    """Device-local store of merge bases, keyed by vault path."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._memory: dict[str, tuple[bytes, float]] = {}
        self._db: sqlite3.Connection | None = None
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = sqlite3.connect(str(db_path))
            self._db.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    path TEXT PRIMARY KEY,
                    content BLOB NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            self._db.commit()

    def save(self, path: str, text: str) -> None:
        blob = gzip.compress(text.encode("utf-8", errors="surrogateescape"))
        now = time.time()
        if self._db is None:
            self._memory[path] = (blob, now)
            return
        self._db.execute(
            "INSERT OR REPLACE INTO snapshots (path, content, updated_at) VALUES (?, ?, ?)",
            (path, blob, now),
        )
        self._db.commit()

    def load(self, path: str) -> str | None:
        """Return the stored base text for path, or None."""
        if self._db is None:
            item = self._memory.get(path)
            blob = item[0] if item else None
        else:
            row = self._db.execute(
                "SELECT content FROM snapshots WHERE path = ?", (path,)
            ).fetchone()
            blob = row[0] if row else None
        if blob is None:
            return None
        return gzip.decompress(blob).decode("utf-8", errors="surrogateescape")

    def delete(self, path: str) -> None:
        if self._db is None:
            self._memory.pop(path, None)
            return
        self._db.execute("DELETE FROM snapshots WHERE path = ?", (path,))
        self._db.commit()

    def move(self, old_path: str, new_path: str) -> None:
        if self._db is None:
            if old_path in self._memory:
                self._memory[new_path] = self._memory.pop(old_path)
            return
        self._db.execute("DELETE FROM snapshots WHERE path = ?", (new_path,))
        self._db.execute("UPDATE snapshots SET path = ? WHERE path = ?", (new_path, old_path))
        self._db.commit()

    def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete snapshots older than the retention period.

        Returns:
            Number of snapshots removed.
        """
        cutoff = time.time() - retention_days * SECONDS_PER_DAY
        if self._db is None:
            stale = [p for p, (_, updated) in self._memory.items() if updated < cutoff]
            for path in stale:
                del self._memory[path]
            removed = len(stale)
        else:
            cursor = self._db.execute("DELETE FROM snapshots WHERE updated_at < ?", (cutoff,))
            self._db.commit()
            removed = cursor.rowcount
        if removed:
            logger.info(f"Pruned {removed} merge snapshots older than {retention_days} days")
        return removed

    def clear(self) -> None:
        self._memory.clear()
        if self._db is not None:
            self._db.execute("DELETE FROM snapshots")
            self._db.commit()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None
