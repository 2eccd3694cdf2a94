"""Bookkeeping for scratch files used by staged token writes."""

import logging
import secrets
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class TemporaryFileTracker:
    """Hands out unique temp file paths and remembers who owns them.

    Only in-memory bookkeeping happens here; callers create and remove the
    files themselves. Anything still tracked when the process shuts down
    belongs to an interrupted write and can be reclaimed with
    :meth:`cleanup_all`.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._owners: dict[Path, str] = {}
        self._log = log or logger

    def create(self, base_path: Path, operation_id: str) -> Path:
        """Allocate a temp path next to ``base_path``.

        Args:
            base_path: File the temp file will eventually replace.
            operation_id: Operation that owns the temp file.

        Returns:
            Path of the form ``<base>.<time_ns>.<random>.tmp``.
        """
        suffix = f"{time.time_ns()}.{secrets.token_hex(8)}.tmp"
        temp_path = base_path.with_name(f"{base_path.name}.{suffix}")
        self._owners[temp_path] = operation_id
        return temp_path

    def is_owned(self, path: Path) -> bool:
        return path in self._owners

    def release(self, path: Path) -> None:
        """Stop tracking ``path`` without touching the filesystem."""
        self._owners.pop(path, None)

    def owned_by(self, operation_id: str) -> list[Path]:
        return [path for path, owner in self._owners.items() if owner == operation_id]

    def __len__(self) -> int:
        return len(self._owners)

    def cleanup_all(self) -> None:
        """Delete every tracked temp file.

        Missing files are fine. Other failures are logged and the path stays
        tracked; this never raises.
        """
        paths = list(self._owners)
        self._log.info(f"Cleaning up {len(paths)} temporary file(s)")

        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                self._log.warning(f"Error cleaning up temp file {path}: {e}")
                continue
            self._owners.pop(path, None)
            self._log.debug(f"Cleaned up temp file: {path}")
