"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Await a coroutine factory, retrying transient failures
- with_auth_refresh: Retry once after a forced token refresh on 401

Only TransientRemoteError (network failures, 5xx, rate limiting) is
retried. Permanent failures, quota exhaustion and authentication errors
propagate immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from vaultsync.sync.errors import (
    AuthenticationFailedError,
    TransientRemoteError,
    UnauthorizedError,
)
from vaultsync.sync.remote import TokenProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (TransientRemoteError,),
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Await func(), retrying with exponential backoff.

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt.
        max_retries: Maximum number of retry attempts after the first call.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Exception types to retry on.
        on_retry: Called with (attempt number, error) before each backoff.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    backoff = initial_backoff
    attempt = 0
    while True:
        try:
            return await func()
        except retryable_exceptions as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)


async def with_auth_refresh(
    func: Callable[[], Awaitable[T]],
    token_provider: TokenProvider | None,
) -> T:
    """Await func(); on 401 force a token refresh and try exactly once more.

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt.
        token_provider: Source of fresh tokens, or None when the remote
            handles auth itself.

    Returns:
        Result of the function.

    Raises:
        AuthenticationFailedError: The retry after refresh was rejected too.
    """
    try:
        return await func()
    except UnauthorizedError as first:
        if token_provider is None:
            raise AuthenticationFailedError(str(first)) from first
        logger.info("Remote rejected access token; refreshing and retrying once")
        await token_provider.refresh_after_unauthorized()
        try:
            return await func()
        except UnauthorizedError as second:
            raise AuthenticationFailedError(
                "Authentication failed after token refresh; re-authentication required"
            ) from second
