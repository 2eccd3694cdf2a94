"""OAuth client wrapper around google-auth.

Performs the token exchanges with Google's authorization server and tells a
single subscriber whenever new token material arrives, whether from the
initial code exchange or from a silent refresh.

Environment Variables:
    GOOGLE_OAUTH_CLIENT_ID: Google OAuth client ID (required by from_env)
    GOOGLE_OAUTH_CLIENT_SECRET: Google OAuth client secret (required by from_env)
"""

import asyncio
import functools
import logging
import os
import secrets
from collections.abc import Callable
from datetime import timezone

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from gworkspace_credentials.auth.exceptions import InvalidGrantError, TokenRefreshError
from gworkspace_credentials.auth.models import Credential

logger = logging.getLogger(__name__)

# Calendar, Tasks and Gmail access
GOOGLE_WORKSPACE_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks",
    "https://www.googleapis.com/auth/gmail.modify",
]

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105 - public endpoint
DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth2callback"

TokensListener = Callable[[Credential], None]


def _is_invalid_grant(error: RefreshError) -> bool:
    for arg in error.args:
        if isinstance(arg, dict) and arg.get("error") == "invalid_grant":
            return True
    return "invalid_grant" in str(error)


class OAuthClient:
    """Google OAuth client with a single token-change subscriber.

    Attributes:
        client_id: OAuth client ID.
        scopes: Scopes requested during authorization.
        token_uri: Token endpoint used for exchanges and refreshes.

    Example:
        ```python
        client = OAuthClient.from_env()
        client.subscribe(lambda credential: print("new tokens", credential.expiry))

        credential = await client.refresh(stored_credential)
        ```
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        token_uri: str = GOOGLE_TOKEN_URI,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self.scopes = scopes if scopes is not None else list(GOOGLE_WORKSPACE_SCOPES)
        self.token_uri = token_uri
        self._listener: TokensListener | None = None

    @classmethod
    def from_env(cls, scopes: list[str] | None = None) -> "OAuthClient":
        """Create a client from GOOGLE_OAUTH_CLIENT_ID / GOOGLE_OAUTH_CLIENT_SECRET.

        Raises:
            ValueError: If either variable is missing.
        """
        client_id = os.environ.get("GOOGLE_OAUTH_CLIENT_ID")
        client_secret = os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise ValueError(
                "Client ID and secret required. "
                "Set GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET environment variables."
            )
        return cls(client_id, client_secret, scopes=scopes)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    @property
    def has_listener(self) -> bool:
        return self._listener is not None

    def subscribe(self, listener: TokensListener) -> None:
        """Register the token-change listener, replacing any previous one."""
        self._listener = listener

    def unsubscribe(self) -> None:
        self._listener = None

    def _notify(self, credential: Credential) -> None:
        if self._listener is not None:
            self._listener(credential)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _to_google_credentials(self, credential: Credential) -> Credentials:
        """Convert a Credential to google-auth Credentials."""
        expiry = None
        if credential.expiry is not None:
            # google-auth compares against naive UTC datetimes
            expiry = credential.expiry.astimezone(timezone.utc).replace(tzinfo=None)

        return Credentials(  # nosec B106 - token_uri is public Google OAuth endpoint
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self._client_secret,
            scopes=self.scopes,
            expiry=expiry,
        )

    def _from_google_credentials(self, credentials: Credentials) -> Credential:
        """Convert google-auth Credentials to a Credential.

        Only fields the exchange actually produced are set, so the result
        can be merged onto a stored record without clobbering it.
        """
        data: dict = {"access_token": credentials.token, "token_type": "Bearer"}
        if credentials.refresh_token:
            data["refresh_token"] = credentials.refresh_token
        if credentials.expiry:
            data["expiry"] = credentials.expiry
        if credentials.scopes:
            data["scope"] = " ".join(credentials.scopes)
        return Credential(**data)

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def _client_config(self, redirect_uri: str) -> dict:
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": self.token_uri,
                "redirect_uris": [redirect_uri],
            }
        }

    def _create_flow(self, redirect_uri: str) -> Flow:
        return Flow.from_client_config(
            self._client_config(redirect_uri),
            scopes=self.scopes,
            redirect_uri=redirect_uri,
        )

    def authorization_url(
        self, redirect_uri: str = DEFAULT_REDIRECT_URI, state: str | None = None
    ) -> tuple[str, str]:
        """Build the consent URL for offline access.

        Returns:
            Tuple of (authorization URL, state).
        """
        state = state or secrets.token_urlsafe(32)
        url, _ = self._create_flow(redirect_uri).authorization_url(
            access_type="offline",
            prompt="consent",
            state=state,
        )
        return url, state

    async def exchange_code(
        self, code: str, redirect_uri: str = DEFAULT_REDIRECT_URI
    ) -> Credential:
        """Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the OAuth redirect.
            redirect_uri: Redirect URI used when requesting the code.

        Returns:
            The issued credential. The subscriber is notified as well.
        """
        flow = self._create_flow(redirect_uri)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(flow.fetch_token, code=code))

        credential = self._from_google_credentials(flow.credentials)
        self._notify(credential)
        return credential

    async def refresh(self, credential: Credential) -> Credential:
        """Obtain a new access token using the credential's refresh token.

        Args:
            credential: Credential holding a refresh token.

        Returns:
            The refreshed credential. The subscriber is notified as well.

        Raises:
            InvalidGrantError: If the refresh token was revoked or expired.
            TokenRefreshError: For any other refresh failure.
        """
        if not credential.refresh_token:
            raise TokenRefreshError("No refresh token available")

        credentials = self._to_google_credentials(credential)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, credentials.refresh, Request())
        except RefreshError as e:
            if _is_invalid_grant(e):
                raise InvalidGrantError(f"Refresh token rejected: {e}") from e
            raise TokenRefreshError(f"Token refresh failed: {e}") from e
        except TransportError as e:
            raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e

        refreshed = self._from_google_credentials(credentials)
        if not refreshed.access_token:
            raise TokenRefreshError("Received invalid tokens during refresh")

        logger.debug("Access token refreshed")
        self._notify(refreshed)
        return refreshed
