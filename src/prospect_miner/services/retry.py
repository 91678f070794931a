"""Retry with exponential backoff for store access.

Two flavours share one backoff schedule:

- ``with_exponential_backoff``: a decorator for synchronous callers (the
  engine's public methods) that sleeps between attempts.
- ``retry_async``: for worker ticks. Each attempt runs in a thread and the
  wait between attempts is an ``asyncio.sleep``, so a struggling store
  never freezes the event loop other jobs run on.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> float:
    """Seconds to wait after failed ``attempt`` (1-based)."""

    return min(base_delay * (exponential_base ** (attempt - 1)), max_delay)


def _should_retry(name: str, attempt: int, max_attempts: int, exc: Exception, delay: float) -> bool:
    if attempt >= max_attempts:
        logger.error("%s failed after %d attempts: %s", name, max_attempts, exc)
        return False
    logger.warning(
        "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
        name,
        attempt,
        max_attempts,
        exc,
        delay,
    )
    return True


def with_exponential_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
):
    """Decorator that retries a synchronous function with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default 3)
        base_delay: Initial delay in seconds (default 1.0)
        max_delay: Maximum delay in seconds (default 60.0)
        exponential_base: Base for exponential backoff (default 2.0)
        exceptions: Tuple of exception types to catch and retry
        on_retry: Optional callback(exception, attempt) called on each retry
        sleep: Function used to wait between attempts (default time.sleep)

    Example:
        @with_exponential_backoff(max_attempts=5, exceptions=(StoreError,))
        def save(key, value):
            ...
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
                    if not _should_retry(func.__name__, attempt, max_attempts, e, delay):
                        raise
                    if on_retry:
                        try:
                            on_retry(e, attempt)
                        except Exception as callback_error:
                            logger.error("on_retry callback failed: %s", callback_error)
                    (sleep or time.sleep)(delay)

        return wrapper

    return decorator


async def retry_async(
    func: Callable[..., Any],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Any:
    """Run blocking ``func(*args)`` in a worker thread, retrying with backoff.

    Exceptions outside ``exceptions`` propagate on the first attempt.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    name = getattr(func, "__name__", repr(func))
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.to_thread(func, *args)
        except exceptions as e:
            delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
            if not _should_retry(name, attempt, max_attempts, e, delay):
                raise
            await (sleep or asyncio.sleep)(delay)
