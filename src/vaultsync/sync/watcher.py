"""File system watcher feeding local changes into the sync engine.

This module provides:
- LocalChangeSink: What the watcher reports to (SyncEngine implements it)
- VaultEventHandler: watchdog handler translating events to vault paths
- VaultWatcher: Observer lifecycle around the handler

watchdog delivers events on its own thread. Every event is handed to the
engine's event loop with call_soon_threadsafe; quiescence debouncing
happens on the engine side.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from watchdog.events import (
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from vaultsync.sync.local import TEMP_SUFFIX

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)


class LocalChangeSink(Protocol):
    """Receiver of vault-relative change notifications."""

    def notify_local_change(self, path: str) -> None: ...

    def notify_local_delete(self, path: str) -> None: ...

    def notify_local_rename(self, old_path: str, new_path: str) -> None: ...


def _decode_path(raw: str | bytes) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


class VaultEventHandler(FileSystemEventHandler):
    """Translate watchdog events into sink calls on the event loop."""

    def __init__(
        self,
        base_path: Path,
        sink: LocalChangeSink,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        super().__init__()
        self._base_path = base_path
        self._sink = sink
        self._loop = loop

    def _relative(self, raw: str | bytes) -> str | None:
        """Vault-relative posix path, or None outside the vault or for temp files."""
        path = Path(_decode_path(raw))
        try:
            relative = path.relative_to(self._base_path)
        except ValueError:
            return None
        if path.name.endswith(TEMP_SUFFIX):
            return None
        return relative.as_posix()

    def _dispatch(self, callback, *args: str) -> None:  # type: ignore[no-untyped-def]
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug(f"Event loop closed; dropping event for {args}")

    def on_created(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileCreatedEvent):
            path = self._relative(event.src_path)
            if path is not None:
                self._dispatch(self._sink.notify_local_change, path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileModifiedEvent):
            path = self._relative(event.src_path)
            if path is not None:
                self._dispatch(self._sink.notify_local_change, path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileDeletedEvent):
            path = self._relative(event.src_path)
            if path is not None:
                self._dispatch(self._sink.notify_local_delete, path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if isinstance(event, DirMovedEvent) or not isinstance(event, FileMovedEvent):
            # Children arrive as their own file move events.
            return
        old_path = self._relative(event.src_path)
        new_path = self._relative(event.dest_path)
        if new_path is None:
            if old_path is not None:
                self._dispatch(self._sink.notify_local_delete, old_path)
            return
        if old_path is None:
            # Atomic replace of a temp file, or a move into the vault.
            self._dispatch(self._sink.notify_local_change, new_path)
            return
        self._dispatch(self._sink.notify_local_rename, old_path, new_path)


class VaultWatcher:
    """Watch a vault directory and report changes to a sink.

    Example:
        watcher = VaultWatcher(vault, engine, asyncio.get_running_loop())
        with watcher:
            await engine.start()
    """

    def __init__(
        self,
        vault_path: Path,
        sink: LocalChangeSink,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._vault_path = Path(vault_path).resolve()
        if not self._vault_path.is_dir():
            raise ValueError(f"Vault path must be a directory: {vault_path}")
        self._handler = VaultEventHandler(self._vault_path, sink, loop)
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def vault_path(self) -> Path:
        return self._vault_path

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._observer.schedule(self._handler, str(self._vault_path), recursive=True)
        self._observer.start()
        self._running = True
        logger.info(f"Watching {self._vault_path}")

    def stop(self) -> None:
        if not self._running:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> VaultWatcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
