"""
Exponential backoff shared by every component that retries remote calls.

    delay(attempt) = min(base * 2 ** attempt, cap)

RateLimitError carries the server's own delay, which replaces the
exponential one. Errors that are not retryable propagate immediately.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from vtrack.sync.errors import NetworkError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based)."""
    if attempt < 0:
        attempt = 0
    return min(base * (2 ** attempt), cap)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (NetworkError, RateLimitError),
    label: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds or ``max_attempts`` calls have failed.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        max_attempts: Total number of calls, including the first.
        base_delay: Base of the exponential delay, in seconds.
        max_delay: Upper bound for a single exponential delay.
        sleep: Awaitable sleep, injectable for tests. Defaults to asyncio.sleep.
        retry_on: Error types worth another attempt. Pass (NetworkError,) to
            let rate limits surface to the caller instead of waiting here.
        label: Name used in log messages.

    Returns:
        Whatever ``fn`` returns on the first successful attempt.

    Raises:
        The last retryable error once attempts are exhausted, or the first
        error outside ``retry_on`` immediately.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            attempt += 1
            if not isinstance(exc, retry_on) or attempt >= max_attempts:
                raise
            if isinstance(exc, RateLimitError):
                wait = exc.retry_after
            else:
                wait = backoff_delay(attempt - 1, base_delay, max_delay)
            logger.warning(
                "%s failed (%s), retry %d/%d in %.1fs",
                label, exc, attempt, max_attempts - 1, wait,
            )
            await sleep(wait)
