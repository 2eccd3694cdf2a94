"""Crash-safe replacement of a private file.

The write is staged in a temp file, read back and verified, then renamed
over the target. Readers therefore see either the previous complete file
or the new complete file. Rename is not atomic on every filesystem and can
fail outright (network mounts, antivirus scanners holding the target), so a
failed rename falls back to copying the verified contents into place.

Steps::

    WRITE_TEMP -> VERIFY_TEMP -> RENAME -------------------> CLEANUP -> DONE
                                   \\-> COPY_CONTENTS -----/
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Any

from gworkspace_credentials.auth.exceptions import TokenSaveError, TokenVerificationError
from gworkspace_credentials.auth.retry import DEFAULT_ATTEMPTS, DEFAULT_DELAY, retry
from gworkspace_credentials.auth.temp_files import TemporaryFileTracker

logger = logging.getLogger(__name__)

PRIVATE_FILE_MODE = 0o600
PRIVATE_DIR_MODE = 0o700


class FileOps:
    """Blocking filesystem primitives used for token files.

    Tests substitute a subclass to simulate failing renames or vanishing
    temp files without depending on real filesystem timing.
    """

    def write_private(self, path: Path, content: str) -> None:
        """Write ``content`` to ``path`` readable by the owner only."""
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        # O_CREAT mode is ignored for files that already existed
        os.chmod(path, PRIVATE_FILE_MODE)

    def read_text(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def replace(self, source: Path, target: Path) -> None:
        os.replace(source, target)

    def exists(self, path: Path) -> bool:
        return path.exists()

    def unlink(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def remove(self, path: Path) -> None:
        """Delete ``path``, raising FileNotFoundError if it is absent."""
        path.unlink()

    def ensure_private_dir(self, path: Path) -> None:
        """Create ``path`` (and parents) with owner-only permissions.

        Existing directories are left as they are; the token file itself
        is always written 0600.
        """
        if not path.exists():
            path.mkdir(parents=True, mode=PRIVATE_DIR_MODE)


class WriteStep(str, Enum):
    """States of a :class:`DurableWrite`."""

    WRITE_TEMP = "write_temp"
    VERIFY_TEMP = "verify_temp"
    RENAME = "rename"
    COPY_CONTENTS = "copy_contents"
    CLEANUP = "cleanup"
    DONE = "done"


class DurableWrite:
    """One staged write of ``payload`` to ``target``.

    Attributes:
        target: Final file location.
        temp_path: Tracked scratch file used for staging.
        history: Steps executed so far, in order.
        rename_error: Error that forced the copy fallback, if any.

    Example:
        ```python
        temp_path = tracker.create(token_path, operation_id)
        write = DurableWrite(token_path, payload, temp_path, tracker, verify=check_record)
        await write.run()
        ```
    """

    def __init__(
        self,
        target: Path,
        payload: str,
        temp_path: Path,
        temp_files: TemporaryFileTracker,
        *,
        verify: Callable[[str], None],
        checkpoint: Callable[[], None] | None = None,
        attempts: int = DEFAULT_ATTEMPTS,
        delay: float = DEFAULT_DELAY,
        file_ops: FileOps | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """Prepare a staged write.

        Args:
            target: File to replace.
            payload: Complete new file contents.
            temp_path: Scratch path, already registered with ``temp_files``.
            temp_files: Tracker owning ``temp_path``.
            verify: Raises if the staged contents are not acceptable.
            checkpoint: Called before each costly step; raises to abandon.
            attempts: Attempts for each retried I/O step.
            delay: Seconds between attempts.
            file_ops: Filesystem primitives.
            log: Logger for progress and non-fatal failures.
        """
        self.target = target
        self.payload = payload
        self.temp_path = temp_path
        self.temp_files = temp_files
        self._verify = verify
        self._checkpoint = checkpoint or (lambda: None)
        self._attempts = attempts
        self._delay = delay
        self._ops = file_ops or FileOps()
        self._log = log or logger
        self.history: list[WriteStep] = []
        self.rename_error: Exception | None = None
        self._handlers: dict[WriteStep, Callable[[], Awaitable[WriteStep]]] = {
            WriteStep.WRITE_TEMP: self._write_temp,
            WriteStep.VERIFY_TEMP: self._verify_temp,
            WriteStep.RENAME: self._rename,
            WriteStep.COPY_CONTENTS: self._copy_contents,
            WriteStep.CLEANUP: self._cleanup,
        }

    async def _io(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def run(self) -> None:
        """Execute every step until the target holds the payload.

        Raises:
            TokenVerificationError: If the staged file did not verify.
            TokenSaveError: If an I/O step failed after retries.
        """
        step = WriteStep.WRITE_TEMP
        try:
            while step is not WriteStep.DONE:
                self.history.append(step)
                step = await self._handlers[step]()
        except OSError as e:
            await self._discard_temp()
            raise TokenSaveError(f"Failed to write {self.target}: {e}") from e
        except BaseException:
            await self._discard_temp()
            raise

    async def _write_temp(self) -> WriteStep:
        self._checkpoint()
        await retry(
            lambda: self._io(self._ops.write_private, self.temp_path, self.payload),
            self._attempts,
            self._delay,
            log=self._log,
        )
        return WriteStep.VERIFY_TEMP

    async def _verify_temp(self) -> WriteStep:
        try:
            content = await self._io(self._ops.read_text, self.temp_path)
            self._verify(content)
        except Exception as e:
            self._log.error(f"Token verification failed for {self.temp_path}: {e}")
            raise TokenVerificationError(f"Staged token file failed verification: {e}") from e
        return WriteStep.RENAME

    async def _rename(self) -> WriteStep:
        self._checkpoint()
        try:
            await retry(
                lambda: self._io(self._ops.replace, self.temp_path, self.target),
                self._attempts,
                self._delay,
                log=self._log,
            )
        except OSError as e:
            self._log.warning(f"Rename failed for {self.target}, trying copy approach: {e}")
            self.rename_error = e
            return WriteStep.COPY_CONTENTS
        return WriteStep.CLEANUP

    async def _copy_contents(self) -> WriteStep:
        self._checkpoint()
        if await self._io(self._ops.exists, self.temp_path):
            content = await self._io(self._ops.read_text, self.temp_path)
            await self._io(self._ops.write_private, self.target, content)
            self._log.info(f"Saved {self.target} using copy approach")
            try:
                await self._io(self._ops.unlink, self.temp_path)
            except OSError as e:
                self._log.warning(f"Could not remove temp file {self.temp_path}: {e}")
        else:
            self._log.warning("Temp file no longer exists, writing directly")
            await self._io(self._ops.write_private, self.target, self.payload)
            self._log.info(f"Saved {self.target} directly to final location")
        return WriteStep.CLEANUP

    async def _cleanup(self) -> WriteStep:
        self.temp_files.release(self.temp_path)
        return WriteStep.DONE

    async def _discard_temp(self) -> None:
        try:
            await self._io(self._ops.unlink, self.temp_path)
        except OSError as e:
            self._log.warning(f"Error cleaning up temp file {self.temp_path}: {e}")
        self.temp_files.release(self.temp_path)
