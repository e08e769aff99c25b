"""
Retry helper with exponential backoff and jitter.

Only StewardError is caught; the caller supplies the predicate that decides
whether a given error is worth another attempt. Anything else propagates
unchanged.
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import StewardError


logger = logging.getLogger(__name__)


T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_MAX_TOTAL_SECONDS = 120.0


def is_transient(error: StewardError) -> bool:
    """Default predicate: retry only errors flagged transient."""
    return error.transient


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: bool = True,
) -> float:
    """
    Delay before the retry following the given (1-based) attempt.

    Args:
        attempt: Attempt that just failed (1 = first call)
        base_delay: Delay after the first failure
        max_delay: Upper bound for a single delay
        jitter: Spread the delay uniformly over [delay/2, delay]

    Returns:
        Delay in seconds
    """
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    if jitter and delay > 0:
        delay = random.uniform(delay / 2, delay)
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    is_retryable: Callable[[StewardError], bool] = is_transient,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    max_total_seconds: float = DEFAULT_MAX_TOTAL_SECONDS,
    jitter: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, StewardError], None]] = None,
) -> T:
    """
    Run an async operation, retrying retryable StewardErrors.

    Args:
        operation: Zero-argument coroutine factory
        operation_name: Name used in log lines
        is_retryable: Predicate over the raised error
        max_attempts: Total attempts including the first
        base_delay: Backoff base in seconds
        max_delay: Cap for a single delay
        max_total_seconds: Budget for the whole retry sequence
        jitter: Apply random jitter to delays
        sleep: Sleep coroutine (injectable for tests)
        on_retry: Callback invoked with (attempt, error) before sleeping

    Returns:
        The operation's result

    Raises:
        StewardError: The last error when it is not retryable, attempts are
            exhausted, or the time budget would be exceeded
    """
    started = time.monotonic()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except StewardError as e:
            if not is_retryable(e):
                raise
            if attempt >= max_attempts:
                logger.warning(
                    f"{operation_name} failed after {attempt} attempts: {e}"
                )
                raise

            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            elapsed = time.monotonic() - started
            if elapsed + delay > max_total_seconds:
                logger.warning(
                    f"{operation_name} retry budget exhausted "
                    f"({elapsed:.1f}s elapsed): {e}"
                )
                raise

            logger.info(
                f"{operation_name} transient failure, retrying in {delay:.2f}s "
                f"(attempt {attempt}/{max_attempts}): {e}"
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await sleep(delay)
