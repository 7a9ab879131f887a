"""Retry utilities with exponential backoff for transient failures.

Used for idempotent calls only: persistence API reads and LLM completions.
Persistence writes are never retried here; a failed write is surfaced to the
operator, who decides whether to apply again.

Usage:
    from utils.retry import retry_call

    data = await retry_call(
        lambda: client.get("/api/identity"),
        retry_if=lambda e: isinstance(e, httpx.TransportError),
    )
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Set, Type, TypeVar

from utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def calculate_backoff(
    attempt: int,
    base: float = 1.0,
    max_delay: float = 8.0,
    jitter: bool = True,
) -> float:
    """Calculate exponential backoff with optional jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Maximum delay cap in seconds
        jitter: Whether to add random jitter (0-1s)

    Returns:
        Delay in seconds before next retry
    """
    delay = min(base * (2**attempt), max_delay)
    if jitter:
        delay += random.uniform(0, 1)
    return delay


def _is_retryable(
    error: Exception,
    retryable_exceptions: Optional[Set[Type[Exception]]],
    retry_if: Optional[Callable[[Exception], bool]],
) -> bool:
    if retry_if is not None:
        return retry_if(error)
    if retryable_exceptions is not None:
        return any(isinstance(error, exc_type) for exc_type in retryable_exceptions)
    return True


async def retry_call(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    backoff_base: float = 1.0,
    backoff_max: float = 8.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Set[Type[Exception]]] = None,
    retry_if: Optional[Callable[[Exception], bool]] = None,
    name: str | None = None,
) -> T:
    """Await func() with retries, re-raising the last error when exhausted.

    Args:
        func: Zero-argument coroutine function
        max_attempts: Maximum number of attempts (including first try)
        backoff_base: Base delay in seconds for backoff calculation
        backoff_max: Maximum delay cap in seconds
        jitter: Whether to add random jitter to prevent thundering herd
        retryable_exceptions: Exception types to retry (None = all)
        retry_if: Predicate deciding retryability; overrides retryable_exceptions
        name: Name used in log messages

    Returns:
        Result of func()
    """
    name = name or getattr(func, "__name__", "call")
    attempts = max(1, max_attempts)

    for attempt in range(attempts):
        try:
            return await func()
        except Exception as e:
            if not _is_retryable(e, retryable_exceptions, retry_if):
                raise

            if attempt >= attempts - 1:
                logger.error(
                    f"{name} failed after {attempts} attempts. "
                    f"Last error: {type(e).__name__}: {e}"
                )
                raise

            delay = calculate_backoff(attempt, backoff_base, backoff_max, jitter)
            logger.warning(
                f"{name} attempt {attempt + 1}/{attempts} failed: "
                f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"Unexpected state in retry for {name}")
