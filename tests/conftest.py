"""Shared pytest fixtures for gworkspace-credentials tests.

This module provides reusable fixtures for credentials, token file
locations, OAuth client mocks and token managers backed by temporary
storage.
"""

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from gworkspace_credentials.auth.locking import PathMutex
from gworkspace_credentials.auth.models import Credential

# =============================================================================
# Credential Fixtures
# =============================================================================


@pytest.fixture
def valid_credential() -> Credential:
    """Create a valid, non-expired credential."""
    return Credential(
        access_token="test_access_token_abc123",
        refresh_token="test_refresh_token_xyz789",
        expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        scope="https://www.googleapis.com/auth/calendar https://www.googleapis.com/auth/tasks",
        token_type="Bearer",
    )


@pytest.fixture
def expired_credential() -> Credential:
    """Create an expired credential that can still be refreshed."""
    return Credential(
        access_token="expired_access_token",
        refresh_token="test_refresh_token",
        expiry=datetime.now(timezone.utc) - timedelta(hours=1),
        token_type="Bearer",
    )


# =============================================================================
# Token Storage Fixtures
# =============================================================================


@pytest.fixture
def temp_token_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for token storage tests."""
    token_dir = tmp_path / ".gworkspace-credentials"
    token_dir.mkdir(parents=True, mode=0o700)
    return token_dir


@pytest.fixture
def temp_token_path(temp_token_dir: Path) -> Path:
    """Get the path for a temporary tokens.json file."""
    return temp_token_dir / "tokens.json"


@pytest.fixture
def write_token_file(temp_token_path: Path) -> Callable[[Any], Path]:
    """Write raw token file content (dict as JSON, str as is)."""

    def _write(content: Any) -> Path:
        if isinstance(content, str):
            temp_token_path.write_text(content)
        else:
            temp_token_path.write_text(json.dumps(content, indent=2, default=str))
        return temp_token_path

    return _write


# =============================================================================
# OAuth Client and Manager Fixtures
# =============================================================================


@pytest.fixture
def oauth_client():
    """Create an OAuthClient with test client credentials."""
    from gworkspace_credentials.auth.oauth_client import OAuthClient

    return OAuthClient(
        client_id="test_client_id",
        client_secret="test_client_secret",  # pragma: allowlist secret
    )


@pytest.fixture
def manager_log() -> MagicMock:
    """Mock logger used as the manager's non-fatal error channel."""
    return MagicMock()


@pytest.fixture
def token_manager(oauth_client, temp_token_path: Path, manager_log: MagicMock):
    """Create a TokenManager with temporary storage and fast timings."""
    from gworkspace_credentials.auth.token_manager import TokenManager

    return TokenManager(
        oauth_client,
        temp_token_path,
        log=manager_log,
        mutex=PathMutex(poll_interval=0.01),
        retry_delay=0,
        shutdown_timeout=1.0,
    )


# =============================================================================
# Mock Google Credentials
# =============================================================================


@pytest.fixture
def mock_google_credentials() -> MagicMock:
    """Create a mock google-auth Credentials object after a refresh."""
    mock_creds = MagicMock()
    mock_creds.token = "mock_access_token"
    mock_creds.refresh_token = "mock_refresh_token"
    mock_creds.expiry = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
    mock_creds.scopes = ["https://www.googleapis.com/auth/calendar"]
    return mock_creds


# =============================================================================
# CLI Test Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()
