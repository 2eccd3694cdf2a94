"""Process-local advisory locks keyed by file path.

Locks only coordinate coroutines inside one process. Two independent
processes pointed at the same token file are not serialized.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TypeVar

from gworkspace_credentials.auth.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 0.1


class PathMutex:
    """Exclusive lock per file path.

    Acquisition polls at a fixed interval until the path is free or the
    timeout expires. There is no queueing or priority between waiters.

    Example:
        ```python
        mutex = PathMutex()

        async with mutex.hold(token_path):
            ...

        result = await mutex.with_lock(token_path, write_tokens)
        ```
    """

    def __init__(
        self,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._held: set[str] = set()

    @staticmethod
    def _key(path: Path) -> str:
        return str(Path(path).resolve())

    def is_locked(self, path: Path) -> bool:
        return self._key(path) in self._held

    async def acquire(self, path: Path, timeout: float | None = None) -> bool:
        """Try to take the lock for ``path``.

        Returns:
            True if acquired, False if the timeout expired first.
        """
        key = self._key(path)
        limit = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit

        while True:
            if key not in self._held:
                self._held.add(key)
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    def release(self, path: Path) -> None:
        self._held.discard(self._key(path))

    @asynccontextmanager
    async def hold(self, path: Path, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for ``path`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock could not be acquired in time.
        """
        limit = self.timeout if timeout is None else timeout
        if not await self.acquire(path, limit):
            logger.warning(f"Timed out after {limit:.1f}s waiting for lock on {path}")
            raise LockTimeoutError(path, limit)
        try:
            yield
        finally:
            self.release(path)

    async def with_lock(
        self,
        path: Path,
        fn: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` while holding the lock for ``path``."""
        async with self.hold(path, timeout):
            return await fn()


# Shared by every manager in the process so they serialize on the same file
default_mutex = PathMutex()
