"""Persistent per-file sync state.

This module provides:
- SyncRecordStore: In-memory record map with explicit SQLite snapshots

Architecture:
    Records live in two dicts: path -> record and remote id -> path, so
    lookups are O(1) in either direction. Mutations only touch memory;
    save() writes the whole snapshot in a single transaction. Callers that
    mutate a record and then make a remote call must restore the previous
    record themselves if the call fails - there is no rollback.

    A database that cannot be read at startup is moved aside as
    `<name>.corrupt-<timestamp>` and the store starts empty; the next full
    scan rebuilds it from content hashes.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path

from vaultsync.core.types import RecordStatus
from vaultsync.sync.types import SyncRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
PAGE_TOKEN_KEY = "page_token"


class SyncRecordStore:
    """Durable map of vault path to SyncRecord.

    Attributes:
        db_path: SQLite file holding the snapshot, or None for memory only.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else None
        self._records: dict[str, SyncRecord] = {}
        self._by_remote_id: dict[str, str] = {}
        self._metadata: dict[str, str] = {}
        self._dirty = False
        self._conn: sqlite3.Connection | None = None

        if self.db_path is not None:
            self._open()
            self.load()

    # === Persistence ===

    def _connect(self) -> sqlite3.Connection:
        assert self.db_path is not None
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_records (
                local_path TEXT PRIMARY KEY,
                remote_id TEXT NOT NULL,
                local_hash TEXT NOT NULL,
                remote_hash TEXT NOT NULL,
                last_synced REAL NOT NULL,
                status TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        return conn

    def _open(self) -> None:
        try:
            self._conn = self._connect()
            self._conn.execute("SELECT COUNT(*) FROM sync_records").fetchone()
        except sqlite3.DatabaseError as e:
            self._quarantine(e)
            self._conn = self._connect()

    def _quarantine(self, error: Exception) -> None:
        assert self.db_path is not None
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        corrupt = self.db_path.with_name(f"{self.db_path.name}.corrupt-{int(time.time())}")
        logger.warning(f"Sync database {self.db_path} is unreadable ({error}); moved to {corrupt}")
        self.db_path.rename(corrupt)

    def load(self) -> None:
        """Replace in-memory state with the last saved snapshot."""
        self._records.clear()
        self._by_remote_id.clear()
        self._metadata.clear()
        if self._conn is None:
            return

        for row in self._conn.execute("SELECT * FROM sync_records"):
            record = SyncRecord(
                remote_id=row["remote_id"],
                local_path=row["local_path"],
                local_hash=row["local_hash"],
                remote_hash=row["remote_hash"],
                last_synced=row["last_synced"],
                status=RecordStatus(row["status"]),
            )
            self._records[record.local_path] = record
            self._by_remote_id[record.remote_id] = record.local_path
        for row in self._conn.execute("SELECT key, value FROM sync_metadata"):
            self._metadata[row["key"]] = row["value"]
        self._dirty = False
        logger.debug(f"Loaded {len(self._records)} sync records")

    def save(self) -> None:
        """Persist the in-memory snapshot atomically."""
        if self._conn is None:
            self._dirty = False
            return

        with self._conn:
            self._conn.execute("DELETE FROM sync_records")
            self._conn.executemany(
                """
                INSERT INTO sync_records (
                    local_path, remote_id, local_hash, remote_hash, last_synced, status
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.local_path,
                        r.remote_id,
                        r.local_hash,
                        r.remote_hash,
                        r.last_synced,
                        r.status.value,
                    )
                    for r in self._records.values()
                ],
            )
            self._conn.execute("DELETE FROM sync_metadata")
            metadata = dict(self._metadata)
            metadata["schema_version"] = str(SCHEMA_VERSION)
            metadata["updated_at"] = str(time.time())
            self._conn.executemany(
                "INSERT INTO sync_metadata (key, value) VALUES (?, ?)",
                list(metadata.items()),
            )
        self._dirty = False
        logger.debug(f"Saved {len(self._records)} sync records")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def delete_persisted_files(self) -> None:
        """Remove the database file, e.g. when the vault is disconnected."""
        self.close()
        if self.db_path is not None:
            for suffix in ("", "-wal", "-shm", "-journal"):
                Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)

    # === Record operations ===

    def get(self, path: str) -> SyncRecord | None:
        return self._records.get(path)

    def set(self, record: SyncRecord) -> None:
        """Insert or replace the record for record.local_path."""
        previous = self._records.get(record.local_path)
        if previous is not None and previous.remote_id != record.remote_id:
            self._by_remote_id.pop(previous.remote_id, None)
        stale_path = self._by_remote_id.get(record.remote_id)
        if stale_path is not None and stale_path != record.local_path:
            # A remote id maps to one path; the old path no longer holds it.
            self._records.pop(stale_path, None)
        self._records[record.local_path] = record
        self._by_remote_id[record.remote_id] = record.local_path
        self._dirty = True

    def delete(self, path: str) -> SyncRecord | None:
        record = self._records.pop(path, None)
        if record is not None:
            if self._by_remote_id.get(record.remote_id) == path:
                del self._by_remote_id[record.remote_id]
            self._dirty = True
        return record

    def move(self, old_path: str, new_path: str) -> SyncRecord | None:
        """Re-key a record after a rename."""
        record = self.delete(old_path)
        if record is None:
            return None
        record.local_path = new_path
        self.set(record)
        return record

    def get_by_remote_id(self, remote_id: str) -> SyncRecord | None:
        path = self._by_remote_id.get(remote_id)
        return self._records.get(path) if path is not None else None

    def known_remote_ids(self) -> set[str]:
        return set(self._by_remote_id)

    def all_records(self) -> list[SyncRecord]:
        """Return copies of every record, sorted by path."""
        return [
            SyncRecord(
                remote_id=r.remote_id,
                local_path=r.local_path,
                local_hash=r.local_hash,
                remote_hash=r.remote_hash,
                last_synced=r.last_synced,
                status=r.status,
            )
            for _, r in sorted(self._records.items())
        ]

    def paths(self) -> list[str]:
        return sorted(self._records)

    def conflicted_paths(self) -> list[str]:
        return sorted(p for p, r in self._records.items() if r.status is RecordStatus.CONFLICT)

    def reset(self) -> None:
        """Forget every record and all metadata, including the page token."""
        self._records.clear()
        self._by_remote_id.clear()
        self._metadata.clear()
        self._dirty = True

    # === Metadata ===

    @property
    def page_token(self) -> str | None:
        return self._metadata.get(PAGE_TOKEN_KEY)

    @page_token.setter
    def page_token(self, token: str | None) -> None:
        if token is None:
            self._metadata.pop(PAGE_TOKEN_KEY, None)
        else:
            self._metadata[PAGE_TOKEN_KEY] = token
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: object) -> bool:
        return path in self._records
