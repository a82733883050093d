"""Bounded concurrency for I/O fan-out.

This module provides:
- run_bounded: Run an async handler over items with at most `limit`
  handlers in flight

Used for hashing and transferring many files without starting one task
per file at once. Results keep the order of the input items.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Sequence[T],
    handler: Callable[[T], Awaitable[R]],
    limit: int = DEFAULT_CONCURRENCY,
) -> list[R]:
    """Apply handler to every item with bounded concurrency.

    A fixed number of workers pull items from a shared cursor, so at most
    `limit` handlers run at any time. The first handler exception cancels
    the remaining workers and is re-raised.

    Args:
        items: Inputs to process.
        handler: Async function applied to each item.
        limit: Maximum concurrent handlers (at least 1).

    Returns:
        Handler results in input order.
    """
    if not items:
        return []
    limit = max(1, limit)
    results: list[R | None] = [None] * len(items)
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            results[index] = await handler(items[index])

    workers = [asyncio.create_task(worker()) for _ in range(min(limit, len(items)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results  # type: ignore[return-value]
