"""Per-path quiescence scheduling for local changes.

This module provides:
- QuiescenceScheduler: One delayed callback per path, rescheduled on
  every new event

A path is only handed to its callback once it has been idle for the full
quiescence delay; editors that save on every keystroke therefore produce
a single queue entry per burst.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class QuiescenceScheduler:
    """Delay callbacks per key until the key has been quiet for `delay` seconds.

    Must be used from within a running event loop.

    Example:
        scheduler = QuiescenceScheduler(2.0)
        scheduler.schedule("notes/a.md", lambda: queue_push("notes/a.md"))
    """

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, callback: Callable[[], None]) -> None:
        """Cancel any pending timer for key and start a new one."""
        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.delay, self._fire, key, callback)

    def _fire(self, key: str, callback: Callable[[], None]) -> None:
        self._handles.pop(key, None)
        try:
            callback()
        except Exception:
            logger.exception(f"Quiescence callback failed for {key}")

    def cancel(self, key: str) -> bool:
        """Cancel the pending timer for key, if any."""
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self) -> list[str]:
        return sorted(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles
