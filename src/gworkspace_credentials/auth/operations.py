"""Tracking of in-flight token operations for shutdown coordination."""

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from gworkspace_credentials.auth.exceptions import ShuttingDownError
from gworkspace_credentials.auth.models import OperationStatus, ShutdownPhase
from gworkspace_credentials.auth.temp_files import TemporaryFileTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PendingOperation:
    """An operation registered with an :class:`OperationRegistry`.

    Attributes:
        id: Unique operation id, e.g. ``save-tokens-1a2b3c4d``.
        status: Current status.
        resources: Scratch files the operation owns.
        started_at: When the operation was registered.
        task: Task running the operation.
    """

    id: str
    status: OperationStatus = OperationStatus.PENDING
    resources: list[Path] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: asyncio.Task | None = field(default=None, repr=False)


class OperationRegistry:
    """Registry of running token operations.

    New operations are only admitted while the owner reports
    :attr:`ShutdownPhase.RUNNING`. During shutdown :meth:`wait_for_all`
    gives running operations a bounded amount of time to finish.

    Attributes:
        temp_files: Tracker consulted when reclaiming abandoned resources.
    """

    def __init__(
        self,
        phase: Callable[[], ShutdownPhase],
        temp_files: TemporaryFileTracker,
        log: logging.Logger | None = None,
    ) -> None:
        self._phase = phase
        self.temp_files = temp_files
        self._operations: dict[str, PendingOperation] = {}
        self._log = log or logger

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def pending(self) -> list[PendingOperation]:
        """Snapshot of operations that have not settled yet."""
        return list(self._operations.values())

    def register(
        self,
        operation_id: str,
        coro: Coroutine[Any, Any, T],
        resources: Iterable[Path] = (),
    ) -> "asyncio.Task[T]":
        """Start tracking ``coro`` and schedule it on the running loop.

        The entry is removed when the task settles. Awaiting the returned
        task yields the coroutine's own result or exception.

        Raises:
            ShuttingDownError: If shutdown has already started.
        """
        phase = self._phase()
        if phase is not ShutdownPhase.RUNNING:
            coro.close()
            self._log.warning(
                f"Rejecting new operation {operation_id} during shutdown phase: {phase.value}"
            )
            raise ShuttingDownError(phase.value, operation_id)

        op = PendingOperation(id=operation_id, resources=list(resources))
        op.task = asyncio.ensure_future(coro)
        op.status = OperationStatus.IN_PROGRESS
        self._operations[operation_id] = op
        op.task.add_done_callback(lambda task: self._settle(op, task))
        return op.task

    def _settle(self, op: PendingOperation, task: asyncio.Task) -> None:
        if task.cancelled():
            op.status = OperationStatus.FAILED
        elif task.exception() is not None:
            op.status = OperationStatus.FAILED
            self._log.debug(f"Operation {op.id} failed: {task.exception()}")
        else:
            op.status = OperationStatus.COMPLETED
        self._operations.pop(op.id, None)

    def attach(self, operation_id: str, path: Path) -> None:
        """Record ``path`` as a resource of a live operation."""
        op = self._operations.get(operation_id)
        if op is not None and path not in op.resources:
            op.resources.append(path)

    async def wait_for_all(self, timeout: float) -> None:
        """Wait for every registered operation, but no longer than ``timeout``.

        Operations still running afterwards are not cancelled. Their
        tracked temp files are released and deleted so an abandoned write
        does not leave scratch files behind.
        """
        if not self._operations:
            return

        self._log.info(f"Waiting for {len(self._operations)} pending token operation(s)...")
        for op in self._operations.values():
            self._log.info(
                f"  - {op.id} (status: {op.status.value}, started: {op.started_at.isoformat()})"
            )

        tasks = [op.task for op in self._operations.values() if op.task is not None]
        await asyncio.wait(tasks, timeout=timeout)

        if not self._operations:
            return

        self._log.warning(
            f"Timed out after {timeout:.1f}s waiting for {len(self._operations)} token operation(s)"
        )
        for op in list(self._operations.values()):
            self._log.warning(f"  - {op.id} still {op.status.value} after timeout")
            for resource in {*op.resources, *self.temp_files.owned_by(op.id)}:
                if not self.temp_files.is_owned(resource):
                    continue
                self._log.info(f"    Cleaning up resource: {resource}")
                self.temp_files.release(resource)
                try:
                    resource.unlink(missing_ok=True)
                except OSError as e:
                    self._log.warning(f"    Could not remove {resource}: {e}")
