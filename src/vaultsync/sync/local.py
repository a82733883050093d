"""Local file tree interface consumed by the sync engine.

This module provides:
- LocalFileStat: Size and modification time of a vault file
- LocalStore: Protocol for the host's file-tree API
- FileSystemLocalStore: LocalStore over a directory on disk

Writes go to a temporary sibling first and are moved into place with
os.replace, so readers never see a partially written file.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

from vaultsync.core.artifacts import normalize_path
from vaultsync.core.hashing import compute_file_hash

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".vaultsync-tmp"

T = TypeVar("T")


@dataclass(frozen=True)
class LocalFileStat:
    """Metadata for a local file."""

    size: int
    mtime: float


class LocalStore(Protocol):
    """Vault file-tree operations. Paths are vault-relative with '/' separators."""

    async def exists(self, path: str) -> bool: ...

    async def stat(self, path: str) -> LocalFileStat | None: ...

    async def read(self, path: str) -> bytes: ...

    async def write(self, path: str, content: bytes) -> None: ...

    async def mkdir(self, path: str) -> None: ...

    async def remove(self, path: str) -> None: ...

    async def rename(self, old_path: str, new_path: str) -> None: ...

    async def list_files(self) -> list[str]: ...

    async def hash(self, path: str) -> str: ...


class FileSystemLocalStore:
    """LocalStore backed by a directory.

    Blocking file I/O runs in the default executor so the event loop is
    never blocked by a slow disk.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _abs(self, path: str) -> Path:
        relative = normalize_path(path)
        target = (self.root / relative).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Path escapes vault root: {path}")
        return target

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def exists(self, path: str) -> bool:
        return await self._run(self._abs(path).is_file)

    async def stat(self, path: str) -> LocalFileStat | None:
        target = self._abs(path)

        def _stat() -> LocalFileStat | None:
            try:
                st = target.stat()
            except FileNotFoundError:
                return None
            return LocalFileStat(size=st.st_size, mtime=st.st_mtime)

        return await self._run(_stat)

    async def read(self, path: str) -> bytes:
        return await self._run(self._abs(path).read_bytes)

    async def write(self, path: str, content: bytes) -> None:
        target = self._abs(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + TEMP_SUFFIX)
            tmp.write_bytes(content)
            os.replace(tmp, target)

        await self._run(_write)
        logger.debug(f"Wrote {path} ({len(content)} bytes)")

    async def mkdir(self, path: str) -> None:
        target = self._abs(path)
        await self._run(lambda: target.mkdir(parents=True, exist_ok=True))

    async def remove(self, path: str) -> None:
        target = self._abs(path)
        await self._run(lambda: target.unlink(missing_ok=True))

    async def rename(self, old_path: str, new_path: str) -> None:
        source = self._abs(old_path)
        target = self._abs(new_path)

        def _rename() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)

        await self._run(_rename)

    async def list_files(self) -> list[str]:
        def _walk() -> list[str]:
            paths: list[str] = []
            for dirpath, _dirnames, filenames in os.walk(self.root):
                for filename in filenames:
                    if filename.endswith(TEMP_SUFFIX):
                        continue
                    full = Path(dirpath) / filename
                    paths.append(full.relative_to(self.root).as_posix())
            return sorted(paths)

        return await self._run(_walk)

    async def hash(self, path: str) -> str:
        return await self._run(compute_file_hash, self._abs(path))
