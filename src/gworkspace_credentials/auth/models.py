"""Data models for credential persistence and lifecycle tracking.

The on-disk token record is the JSON form of :class:`Credential`. Any
provider-specific fields returned by the authorization server (``id_token``,
``refresh_token_expires_in`` and so on) are kept as extra fields so they
round-trip through the file untouched.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Tokens expiring within this window are refreshed ahead of time
REFRESH_BUFFER_SECONDS = 5 * 60


class TokenStatus(str, Enum):
    """Status of the persisted token record."""

    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INVALID = "invalid"


class ShutdownPhase(str, Enum):
    """Lifecycle stage of a token manager.

    Phases only ever advance, in declaration order.
    """

    RUNNING = "running"
    PREPARING = "preparing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        """Position of this phase in the shutdown sequence."""
        return list(ShutdownPhase).index(self)


class OperationStatus(str, Enum):
    """Status of a tracked token operation."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Credential(BaseModel):
    """OAuth credential as held in memory and persisted on disk.

    Instances are frozen. Holders replace the whole object instead of
    mutating it, so API clients reading the current credential never see a
    half-updated value.

    Attributes:
        access_token: Bearer token attached to outbound API calls.
        refresh_token: Long-lived token used to obtain new access tokens.
        expiry: When the access token expires (UTC). ``None`` means the
            provider did not report an expiry.
        token_type: Token type, normally "Bearer".
        scope: Space separated list of granted scopes.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    access_token: str | None = Field(default=None, description="OAuth access token")
    refresh_token: str | None = Field(default=None, description="OAuth refresh token")
    expiry: datetime | None = Field(default=None, description="Access token expiry (UTC)")
    token_type: str = Field(default="Bearer", description="Token type")
    scope: str | None = Field(default=None, description="Granted scopes")

    @field_validator("expiry")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, buffer_seconds: int = REFRESH_BUFFER_SECONDS) -> bool:
        """Check if the access token is expired or about to expire.

        A credential without an expiry is only considered expired when it
        has no access token at all; offline-access tokens often omit it.

        Args:
            buffer_seconds: Treat tokens expiring within this many seconds
                as already expired.

        Returns:
            True if a refresh is needed.
        """
        if self.expiry is None:
            return not self.access_token
        return datetime.now(timezone.utc) >= self.expiry - timedelta(seconds=buffer_seconds)

    def merged_onto(self, existing: "Credential | None") -> "Credential":
        """Overlay this (possibly partial) credential on an existing one.

        Fields explicitly set on ``self`` win, except ``refresh_token``:
        refresh exchanges frequently return only a new access token, so the
        existing refresh token is kept unless a new one is supplied.

        Args:
            existing: Previously persisted credential, if any.

        Returns:
            The merged credential.
        """
        if existing is None:
            return self

        data = existing.model_dump()
        data.update(self.model_dump(exclude_unset=True))
        if not self.refresh_token:
            data["refresh_token"] = existing.refresh_token
        return Credential.model_validate(data)

    def to_record(self) -> str:
        """Serialize to the pretty-printed on-disk JSON record."""
        return self.model_dump_json(indent=2, exclude_none=True)

    @classmethod
    def from_record(cls, content: str) -> "Credential":
        """Parse an on-disk JSON record.

        Raises:
            ValueError: If the content is not a valid credential record.
        """
        return cls.model_validate_json(content)
