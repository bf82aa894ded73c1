#!/usr/bin/env python3
"""Resilience Patterns for the rental engine.

Retry with exponential backoff for actions that must be driven to
completion, most importantly the compensating device release that runs
when an order holding a claim is cancelled.

Example:
    device = await retry_async(registry.release, device_id, max_attempts=5)
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import DatabaseError, RentalsError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Retry with Exponential Backoff
# ============================================

# Default exceptions that are considered retryable
DEFAULT_RETRYABLE_EXCEPTIONS = (
    DatabaseError,
    asyncio.TimeoutError,
    ConnectionResetError,
    OSError,
)


def _is_retryable(exc: Exception) -> bool:
    """Errors flagged as unrecoverable are never retried, whatever their type."""
    if isinstance(exc, RentalsError):
        return exc.recoverable
    return True


def _next_delay(delay: float, max_delay: float, jitter: bool) -> float:
    actual_delay = min(delay, max_delay)
    if jitter:
        actual_delay = actual_delay * (0.5 + random.random())
    return actual_delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    **kwargs,
) -> T:
    """Retry an async function call with exponential backoff.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Maximum attempts
        backoff_factor: Delay multiplier
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Add random jitter to the delay
        retryable_exceptions: Exceptions to retry on
        on_retry: Optional callback called before each retry
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func

    Raises:
        The last exception once all attempts are exhausted, or any
        non-retryable exception immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            if not _is_retryable(e) or attempt >= max_attempts:
                if attempt >= max_attempts:
                    logger.error(
                        f"All {max_attempts} attempts failed. Last error: {e}"
                    )
                raise

            actual_delay = _next_delay(delay, max_delay, jitter)
            if on_retry:
                on_retry(e, attempt)

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {actual_delay:.1f}s"
            )
            await asyncio.sleep(actual_delay)
            delay = min(delay * backoff_factor, max_delay)

    raise RuntimeError("Retry logic error")


__all__ = [
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "retry_async",
]
