"""OAuth credential lifecycle management for Google Workspace tools.

This package keeps an OAuth access/refresh token pair on disk and in
memory, and keeps it intact across restarts, concurrent refreshes and
abrupt shutdown.

Quick Start:
    ```python
    from gworkspace_credentials.auth import OAuthClient, TokenManager

    manager = TokenManager(OAuthClient.from_env())

    if await manager.validate():
        credential = manager.get_current_credential()

    await manager.begin_shutdown()
    ```
"""

from gworkspace_credentials.auth.exceptions import (
    InvalidGrantError,
    LockTimeoutError,
    ShuttingDownError,
    TokenManagerError,
    TokenRefreshError,
    TokenSaveError,
    TokenVerificationError,
)
from gworkspace_credentials.auth.models import (
    Credential,
    OperationStatus,
    ShutdownPhase,
    TokenStatus,
)
from gworkspace_credentials.auth.oauth_client import GOOGLE_WORKSPACE_SCOPES, OAuthClient
from gworkspace_credentials.auth.paths import get_secure_token_path
from gworkspace_credentials.auth.token_manager import TokenManager, shutdown_with_fallback

__all__ = [
    "TokenManager",
    "OAuthClient",
    "Credential",
    "TokenStatus",
    "ShutdownPhase",
    "OperationStatus",
    "GOOGLE_WORKSPACE_SCOPES",
    "get_secure_token_path",
    "shutdown_with_fallback",
    "TokenManagerError",
    "ShuttingDownError",
    "LockTimeoutError",
    "TokenVerificationError",
    "TokenSaveError",
    "TokenRefreshError",
    "InvalidGrantError",
]
