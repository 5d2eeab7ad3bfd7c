"""
Retry and polling helpers for calls to slow or flaky collaborators.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    retries: int = 3,
    initial_delay: float = 1.0,
    retry_on: tuple = (Exception,),
    description: str = "operation",
) -> T:
    """
    Run `operation`, retrying up to `retries` more times on failure.
    Waits initial_delay, 2*initial_delay, 4*initial_delay... between attempts.
    Cancellation of the calling task aborts the wait immediately.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(retries + 1):
        if attempt > 0:
            wait_time = initial_delay * (2 ** (attempt - 1))
            logger.info(f"Retrying {description} (attempt {attempt}/{retries}) in {wait_time:g}s")
            await asyncio.sleep(wait_time)

        try:
            return await operation()
        except retry_on as e:
            last_error = e
            logger.warning(f"{description} attempt {attempt} failed: {e}")

    raise RetryError(description, retries + 1, last_error)

class RetryError(Exception):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error

async def poll_until(
    check: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    interval: float,
    timeout: float,
) -> T:
    """
    Call `check` every `interval` seconds until `is_done(result)` holds.
    The first check happens after one interval.
    Raises asyncio.TimeoutError once `timeout` seconds have elapsed.
    """
    start = time.monotonic()

    while True:
        await asyncio.sleep(interval)

        if time.monotonic() - start > timeout:
            raise asyncio.TimeoutError(f"Polling timed out after {timeout:g}s")

        result = await check()
        if is_done(result):
            return result
