"""Exceptions raised by the credential lifecycle components."""

from pathlib import Path


class TokenManagerError(Exception):
    """Base class for token manager failures."""


class ShuttingDownError(TokenManagerError):
    """Raised when an operation is requested or abandoned during shutdown."""

    def __init__(self, phase: str, operation: str | None = None) -> None:
        self.phase = phase
        self.operation = operation
        target = f"operation {operation}" if operation else "new operations"
        super().__init__(f"Cannot run {target} during shutdown phase: {phase}")


class LockTimeoutError(TokenManagerError):
    """Raised when a path lock cannot be acquired in time."""

    def __init__(self, path: Path, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock for {path} within {timeout:.1f}s")


class TokenVerificationError(TokenManagerError):
    """Raised when a freshly written token file does not read back correctly."""


class TokenSaveError(TokenManagerError):
    """Raised when tokens could not be written to their final location."""


class TokenRefreshError(TokenManagerError):
    """Raised when the refresh exchange with the authorization server fails."""


class InvalidGrantError(TokenRefreshError):
    """Raised when the refresh token was revoked or expired.

    The user has to go through interactive authorization again.
    """
