"""Fixed-delay retry for transient file I/O."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY = 0.3


async def retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    *,
    log: logging.Logger | None = None,
) -> T:
    """Await ``fn()`` up to ``attempts`` times.

    The delay between attempts is constant; there is no backoff or jitter.
    After the final attempt the last exception is re-raised as is.

    Args:
        fn: Zero-argument coroutine function to run.
        attempts: Maximum number of attempts (at least 1).
        delay: Seconds to wait between attempts.
        log: Logger for failed attempts.

    Returns:
        The result of the first successful attempt.
    """
    log = log or logger
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            log.warning(f"Operation failed (attempt {attempt}/{attempts}): {e}")
            if attempt == attempts:
                raise
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
