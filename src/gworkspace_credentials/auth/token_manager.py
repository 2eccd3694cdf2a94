"""Credential lifecycle manager.

Owns the persisted token record and the in-memory credential mirror, and
coordinates every change to them:

- Writes are staged, verified and renamed into place under a path lock, so
  the token file is always either a complete record or absent.
- Refresh notifications from the OAuth client are persisted as tracked
  operations, keeping an already known refresh token when the
  authorization server does not send a new one.
- Shutdown moves through ``running -> preparing -> finalizing -> complete``.
  No new operation is admitted once shutdown starts, in-flight operations
  get a bounded grace period, and leftover scratch files are removed.
  :meth:`TokenManager.emergency_shutdown` covers the case where the
  asynchronous path cannot be awaited.

Example:
    ```python
    manager = TokenManager(OAuthClient.from_env())

    if not await manager.validate():
        credential = await manager.oauth_client.exchange_code(code)
        await manager.save(credential)

    token = manager.get_current_credential().access_token
    await shutdown_with_fallback(manager)
    ```
"""

import asyncio
import atexit
import json
import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from gworkspace_credentials.auth.durable_write import DurableWrite, FileOps
from gworkspace_credentials.auth.exceptions import (
    InvalidGrantError,
    ShuttingDownError,
    TokenManagerError,
    TokenSaveError,
)
from gworkspace_credentials.auth.locking import DEFAULT_LOCK_TIMEOUT, PathMutex, default_mutex
from gworkspace_credentials.auth.models import Credential, ShutdownPhase, TokenStatus
from gworkspace_credentials.auth.oauth_client import OAuthClient
from gworkspace_credentials.auth.operations import OperationRegistry, PendingOperation
from gworkspace_credentials.auth.paths import get_secure_token_path
from gworkspace_credentials.auth.retry import DEFAULT_ATTEMPTS, DEFAULT_DELAY
from gworkspace_credentials.auth.temp_files import TemporaryFileTracker

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 3.0
# Upper bound for the whole graceful shutdown before falling back to emergency mode
DEFAULT_SHUTDOWN_GRACE = 5.0


def _verify_record(content: str) -> None:
    data = json.loads(content)
    if not isinstance(data, dict) or not data.get("access_token"):
        raise ValueError("invalid token format")


class TokenManager:
    """Durable owner of the OAuth token file.

    Attributes:
        oauth_client: Client performing token exchanges and refreshes.
        temp_files: Tracker for scratch files of staged writes.
        operations: Registry of in-flight operations.
    """

    def __init__(
        self,
        oauth_client: OAuthClient,
        token_path: Path | None = None,
        *,
        log: logging.Logger | None = None,
        mutex: PathMutex | None = None,
        file_ops: FileOps | None = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_DELAY,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        """Initialize the manager and subscribe to token changes.

        Args:
            oauth_client: OAuth client whose token notifications are persisted.
            token_path: Token file location. Defaults to the per-user path.
            log: Channel for progress and non-fatal failures (cleanup errors,
                shutdown progress). Defaults to this module's logger.
            mutex: Path lock. Defaults to the process-wide instance.
            file_ops: Filesystem primitives.
            retry_attempts: Attempts for each retried file operation.
            retry_delay: Seconds between file operation attempts.
            lock_timeout: Seconds to wait for the token file lock.
            shutdown_timeout: Seconds to wait for in-flight operations
                during :meth:`begin_shutdown`.
        """
        self.oauth_client = oauth_client
        self._token_path = Path(token_path) if token_path else get_secure_token_path()
        self._log = log or logger
        self._mutex = mutex or default_mutex
        self._ops = file_ops or FileOps()
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._lock_timeout = lock_timeout
        self._shutdown_timeout = shutdown_timeout

        self._phase = ShutdownPhase.RUNNING
        self._credential: Credential | None = None
        self.temp_files = TemporaryFileTracker(self._log)
        self.operations = OperationRegistry(lambda: self._phase, self.temp_files, self._log)

        self.oauth_client.subscribe(self._on_tokens_changed)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def token_path(self) -> Path:
        return self._token_path

    @property
    def phase(self) -> ShutdownPhase:
        return self._phase

    @property
    def pending_operations(self) -> list[PendingOperation]:
        return self.operations.pending

    def get_current_credential(self) -> Credential | None:
        """Return the in-memory credential for attaching to API calls.

        Never performs I/O. The returned object is immutable.
        """
        return self._credential

    def _advance(self, phase: ShutdownPhase) -> None:
        if phase.rank > self._phase.rank:
            self._phase = phase

    def _checkpoint(self, operation_id: str) -> None:
        """Abandon an admitted operation once shutdown has given up waiting."""
        if self._phase.rank >= ShutdownPhase.FINALIZING.rank:
            self._log.warning(
                f"Aborting {operation_id} during shutdown phase: {self._phase.value}"
            )
            raise ShuttingDownError(self._phase.value, operation_id)

    @staticmethod
    def _new_operation_id(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:8]}"

    async def _io(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ------------------------------------------------------------------
    # Load / validate / refresh
    # ------------------------------------------------------------------

    async def load(self) -> bool:
        """Load the saved token record into memory.

        Returns:
            True if a valid record was loaded. False if the file is missing,
            unreadable or corrupt; corrupt files are deleted.
        """
        operation_id = self._new_operation_id("load-tokens")
        return await self.operations.register(operation_id, self._load_internal())

    async def _load_internal(self) -> bool:
        path = self._token_path
        if not await self._io(self._ops.exists, path):
            self._log.info(f"No token file found at: {path}")
            return False

        try:
            content = await self._io(self._ops.read_text, path)
        except UnicodeDecodeError as e:
            self._log.error(f"Error decoding token file (not UTF-8): {e}")
            await self._discard_corrupt_file()
            return False
        except OSError as e:
            self._log.error(f"Error reading token file: {e}")
            return False

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self._log.error(f"Error parsing token file (invalid JSON): {e}")
            await self._discard_corrupt_file()
            return False

        if not isinstance(data, dict) or not data.get("access_token"):
            self._log.error(f"Invalid token format in file: {path}")
            await self._discard_corrupt_file()
            return False

        try:
            credential = Credential.model_validate(data)
        except ValidationError as e:
            self._log.error(f"Invalid token record in file: {e}")
            await self._discard_corrupt_file()
            return False

        self._credential = credential
        return True

    async def _discard_corrupt_file(self) -> None:
        try:
            await self._io(self._ops.unlink, self._token_path)
        except OSError as e:
            self._log.warning(f"Could not remove corrupted token file: {e}")
            return
        self._log.info("Removed corrupted token file")

    async def validate(self) -> bool:
        """Check that usable tokens exist, loading and refreshing as needed.

        Returns:
            True if a valid (possibly refreshed) access token is available.
        """
        operation_id = self._new_operation_id("validate-tokens")
        return await self.operations.register(operation_id, self._validate_internal())

    async def _validate_internal(self) -> bool:
        credential = self._credential
        if credential is None or not credential.access_token:
            if not await self._load_internal():
                return False
            credential = self._credential
            if credential is None or not credential.access_token:
                return False
        return await self._refresh_if_needed_internal()

    async def refresh_if_needed(self) -> bool:
        """Refresh the access token if it expires within five minutes.

        Returns:
            False if re-authentication is required or the refresh failed,
            True otherwise.
        """
        operation_id = self._new_operation_id("refresh-tokens")
        return await self.operations.register(operation_id, self._refresh_if_needed_internal())

    async def _refresh_if_needed_internal(self) -> bool:
        credential = self._credential
        if credential is None or (not credential.access_token and not credential.refresh_token):
            self._log.warning("No access or refresh token available")
            return False

        if not credential.is_expired():
            return True
        if not credential.refresh_token:
            self._log.warning("Access token expired but no refresh token is available")
            return True

        self._log.info("Auth token expired or nearing expiry, refreshing...")
        try:
            refreshed = await self.oauth_client.refresh(credential)
        except InvalidGrantError as e:
            self._log.error(
                "Error refreshing auth token: Invalid grant. "
                f"Token likely expired or revoked. Re-authentication required ({e})"
            )
            return False
        except Exception as e:
            self._log.error(f"Error refreshing auth token: {e}")
            return False

        # Persisting happens through the OAuth client's change notification
        self._credential = refreshed.merged_onto(credential)
        self._log.info("Token refreshed successfully")
        return True

    # ------------------------------------------------------------------
    # Durable writes
    # ------------------------------------------------------------------

    async def _write_durably(self, credential: Credential, operation_id: str) -> DurableWrite:
        try:
            await self._io(self._ops.ensure_private_dir, self._token_path.parent)
        except OSError as e:
            raise TokenSaveError(f"Failed to create token directory: {e}") from e

        temp_path = self.temp_files.create(self._token_path, operation_id)
        self.operations.attach(operation_id, temp_path)
        self._log.debug(f"Created temp file for {operation_id}: {temp_path}")

        write = DurableWrite(
            self._token_path,
            credential.to_record(),
            temp_path,
            self.temp_files,
            verify=_verify_record,
            checkpoint=lambda: self._checkpoint(operation_id),
            attempts=self._retry_attempts,
            delay=self._retry_delay,
            file_ops=self._ops,
            log=self._log,
        )
        await write.run()
        return write

    async def save(self, credential: Credential | dict) -> None:
        """Persist a credential and make it the current one.

        Raises:
            ShuttingDownError: If shutdown has started.
            LockTimeoutError: If the token file lock could not be acquired.
            TokenVerificationError: If the staged record did not read back.
            TokenSaveError: If the record could not be written.
        """
        if not isinstance(credential, Credential):
            credential = Credential.model_validate(credential)
        operation_id = self._new_operation_id("save-tokens")
        await self.operations.register(operation_id, self._save_internal(credential, operation_id))

    async def _save_internal(self, credential: Credential, operation_id: str) -> None:
        async with self._mutex.hold(self._token_path, self._lock_timeout):
            self._checkpoint(operation_id)
            await self._write_durably(credential, operation_id)
            self._credential = credential
        self._log.info("Tokens saved and verified successfully")

    async def refresh_tokens_internal(self, credential: Credential | dict) -> None:
        """Merge new token material into the saved record and persist it.

        The existing refresh token is kept when ``credential`` lacks one.

        Raises:
            Same as :meth:`save`.
        """
        if not isinstance(credential, Credential):
            credential = Credential.model_validate(credential)
        operation_id = self._new_operation_id("token-refresh")
        await self.operations.register(
            operation_id, self._refresh_tokens_internal(credential, operation_id)
        )

    async def _refresh_tokens_internal(self, credential: Credential, operation_id: str) -> None:
        async with self._mutex.hold(self._token_path, self._lock_timeout):
            self._checkpoint(operation_id)
            existing = await self._read_existing_record() or self._credential
            merged = credential.merged_onto(existing)
            await self._write_durably(merged, operation_id)
            self._credential = merged
        self._log.info("Tokens updated and saved during refresh")

    async def _read_existing_record(self) -> Credential | None:
        if not await self._io(self._ops.exists, self._token_path):
            return None
        try:
            content = await self._io(self._ops.read_text, self._token_path)
            return Credential.from_record(content)
        except (OSError, ValueError) as e:
            self._log.warning(f"Could not read existing tokens, using only new tokens: {e}")
            return None

    def _on_tokens_changed(self, credential: Credential) -> None:
        if self._phase is not ShutdownPhase.RUNNING:
            self._log.info("Skipping token refresh during shutdown")
            return
        operation_id = self._new_operation_id("token-refresh")
        self.operations.register(
            operation_id, self._persist_refreshed_tokens(credential, operation_id)
        )

    async def _persist_refreshed_tokens(self, credential: Credential, operation_id: str) -> None:
        try:
            await self._refresh_tokens_internal(credential, operation_id)
        except TokenManagerError as e:
            self._log.error(f"Error in token refresh operation {operation_id}: {e}")

    # ------------------------------------------------------------------
    # Clear / sync save
    # ------------------------------------------------------------------

    async def clear(self) -> None:
        """Forget the current credential and delete the token file.

        Deletion is best effort; failures are logged, never raised.
        """
        operation_id = self._new_operation_id("clear-tokens")
        await self.operations.register(operation_id, self._clear_internal())

    async def _clear_internal(self) -> None:
        self._credential = None
        try:
            await self._io(self._ops.remove, self._token_path)
        except FileNotFoundError:
            self._log.info("Token file already deleted")
        except OSError as e:
            self._log.error(f"Error clearing tokens: {e}")
        else:
            self._log.info("Tokens cleared successfully")

    def sync_save(self, credential: Credential) -> None:
        """Write the credential straight to the token file, synchronously.

        Only meant for emergency shutdown: no temp file, no lock, so a
        crash mid-write can leave a partial file. Errors are logged.
        """
        if self._phase is ShutdownPhase.COMPLETE:
            self._log.warning("Cannot save tokens in COMPLETE shutdown phase")
            return

        self._log.info("Performing synchronous token save during shutdown")
        try:
            self._ops.ensure_private_dir(self._token_path.parent)
            self._ops.write_private(self._token_path, credential.to_record())
        except OSError as e:
            self._log.error(f"Error in synchronous token save: {e}")
            return

        self._credential = credential
        self._log.info("Tokens saved synchronously")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> TokenStatus:
        """Classify the token file on disk without modifying it."""
        if not self._token_path.exists():
            return TokenStatus.MISSING

        try:
            credential = Credential.from_record(self._ops.read_text(self._token_path))
        except (OSError, ValueError):
            return TokenStatus.INVALID

        if not credential.access_token:
            return TokenStatus.INVALID
        if credential.is_expired():
            return TokenStatus.EXPIRED
        return TokenStatus.VALID

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _remove_tokens_listener(self) -> None:
        if self.oauth_client.has_listener:
            self.oauth_client.unsubscribe()
            self._log.info("Token refresh listener removed")

    async def begin_shutdown(self) -> None:
        """Stop admitting operations, drain in-flight ones and clean up.

        Calling it again once shutdown has started only logs.
        """
        if self._phase is not ShutdownPhase.RUNNING:
            self._log.info(f"Already in shutdown phase: {self._phase.value}")
            return

        self._advance(ShutdownPhase.PREPARING)
        self._log.info("Token manager preparing for shutdown")
        self._remove_tokens_listener()

        await self.operations.wait_for_all(self._shutdown_timeout)

        if self._phase is ShutdownPhase.COMPLETE:
            # emergency_shutdown ran while we were waiting
            return

        self._advance(ShutdownPhase.FINALIZING)
        self._log.info("Token manager finalizing shutdown")
        self.temp_files.cleanup_all()

        self._advance(ShutdownPhase.COMPLETE)
        self._log.info("Token manager shutdown complete")

    def emergency_shutdown(self) -> None:
        """Shut down synchronously, saving the in-memory credential directly.

        Used when :meth:`begin_shutdown` cannot be awaited. Safe to call any
        number of times.
        """
        if self._phase is ShutdownPhase.COMPLETE:
            return

        self._advance(ShutdownPhase.FINALIZING)
        self._log.warning("Emergency shutdown initiated")
        self._remove_tokens_listener()

        credential = self._credential
        if credential is not None and credential.access_token:
            self.sync_save(credential)

        self._advance(ShutdownPhase.COMPLETE)
        self._log.warning("Emergency shutdown complete")

    def register_exit_hook(self) -> None:
        """Run :meth:`emergency_shutdown` at interpreter exit.

        Harmless after a normal shutdown, which leaves the phase complete.
        """
        atexit.register(self.emergency_shutdown)


async def shutdown_with_fallback(
    manager: TokenManager, timeout: float = DEFAULT_SHUTDOWN_GRACE
) -> None:
    """Shut ``manager`` down gracefully, falling back to emergency mode.

    The graceful path is abandoned if it takes longer than ``timeout`` or
    raises; :meth:`TokenManager.emergency_shutdown` then saves whatever
    credential is in memory.
    """
    try:
        await asyncio.wait_for(manager.begin_shutdown(), timeout)
    except asyncio.TimeoutError:
        logger.error("TokenManager shutdown timed out, using emergency shutdown")
        manager.emergency_shutdown()
    except Exception as e:
        logger.error(f"Error during TokenManager shutdown: {e}")
        manager.emergency_shutdown()
