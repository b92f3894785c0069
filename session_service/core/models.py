from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = 1
ABSOLUTE_SESSION_END = "absolute"


class SessionErrorDetail(BaseModel):
    """Last observed failure carried on a session record."""

    model_config = ConfigDict(frozen=True)

    message: str
    description: Optional[str] = None


class SessionRecord(BaseModel):
    """Plaintext session state carried inside the encrypted session cookie.

    Wire keys are camelCase; unknown keys are kept so records written by a newer
    schema survive a round trip through this one.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    version: int = Field(default=SCHEMA_VERSION, alias="v")
    subject: Optional[str] = Field(default=None, alias="sub")
    provider_refresh_token: Optional[str] = Field(default=None, alias="providerRefreshToken")
    provider_id_token_expires_at: Optional[int] = Field(default=None, alias="providerIdTokenExpiresAt")
    absolute_session_expires_at: Optional[int] = Field(default=None, alias="absoluteSessionExpiresAt")
    session_ended: Optional[Literal["absolute"]] = Field(default=None, alias="sessionEnded")
    token_rotated_at: Optional[int] = Field(default=None, alias="tokenRotatedAt")
    token_rotation_count: int = Field(default=0, ge=0, alias="tokenRotationCount")
    error: Optional[SessionErrorDetail] = None

    # Envelope fields, written by the token cipher.
    issued_at: Optional[int] = Field(default=None, alias="iat")
    expires_at: Optional[int] = Field(default=None, alias="exp")
    token_id: Optional[str] = Field(default=None, alias="jti")

    @field_validator("token_rotation_count", mode="before")
    def _coerce_rotation_count(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("version", mode="before")
    def _coerce_version(cls, v: Any) -> Any:
        return SCHEMA_VERSION if v is None else v

    @field_validator("provider_id_token_expires_at", "absolute_session_expires_at", "token_rotated_at", mode="before")
    def _coerce_epoch_ms(cls, v: Any) -> Any:
        # Some writers store epoch milliseconds as floats.
        if isinstance(v, float):
            return int(v)
        return v

    def to_claims(self) -> dict[str, Any]:
        """Return the wire representation without envelope fields."""
        return self.model_dump(by_alias=True, mode="json", exclude={"issued_at", "expires_at", "token_id"})

    def with_error(self, message: str, description: Optional[str] = None) -> "SessionRecord":
        return self.model_copy(update={"error": SessionErrorDetail(message=message, description=description)})


class SessionView(BaseModel):
    """Reduced projection of a session record that is safe to hand to callers.

    Never carries the upstream refresh token.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    error: Optional[SessionErrorDetail] = None
    session_ended: Optional[Literal["absolute"]] = Field(default=None, alias="sessionEnded")
    token_rotated_at: Optional[int] = Field(default=None, alias="tokenRotatedAt")
    token_rotation_count: int = Field(default=0, alias="tokenRotationCount")
    provider_id_token_expires_at: Optional[int] = Field(default=None, alias="providerIdTokenExpiresAt")
    expires: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionView":
        """Project a record; ``expires`` is the absolute cap, or the envelope expiry when there is none."""
        expires: Optional[datetime] = None
        if record.absolute_session_expires_at is not None:
            expires = datetime.fromtimestamp(record.absolute_session_expires_at / 1000, tz=UTC)
        elif record.expires_at is not None:
            expires = datetime.fromtimestamp(record.expires_at, tz=UTC)
        return cls(
            error=record.error,
            session_ended=record.session_ended,
            token_rotated_at=record.token_rotated_at,
            token_rotation_count=record.token_rotation_count,
            provider_id_token_expires_at=record.provider_id_token_expires_at,
            expires=expires,
        )


class ProviderTokens(BaseModel):
    """Tokens returned by a successful provider refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    id_token: str
    refresh_token: Optional[str] = None


class RefreshOutcome(str, Enum):
    """Result of one refresh state machine step."""

    ISSUED = "ISSUED"
    MISSING_REFRESH_TOKEN = "MISSING_REFRESH_TOKEN"
    ABSOLUTE_CAP_REACHED = "ABSOLUTE_CAP_REACHED"
    FRESH = "FRESH"
    REFRESHED = "REFRESHED"
    REFRESH_FAILED = "REFRESH_FAILED"

    def __str__(self) -> str:
        return self.value
