"""Credential Schemas.

One payload model per auth type; AUTH_PAYLOADS maps the tag to its model.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuthType(str, Enum):
    """Supported credential kinds."""

    API_KEY = "api_key"
    BEARER = "bearer"
    BASIC = "basic"
    OAUTH = "oauth"


class ApiKeyData(BaseModel):
    """API key sent in a configurable header."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(..., alias="apiKey", min_length=1)
    header: str = Field(default="X-API-Key", min_length=1)


class BearerTokenData(BaseModel):
    token: str = Field(..., min_length=1)


class BasicAuthData(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class OAuthData(BaseModel):
    """OAuth token set (only the access token is sent)."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken", min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    token_type: str = Field(default="Bearer", alias="tokenType")
    expires_in: int | None = Field(default=None, alias="expiresIn")
    scope: str | None = None


CredentialData = ApiKeyData | BearerTokenData | BasicAuthData | OAuthData

AUTH_PAYLOADS: dict[AuthType, type[BaseModel]] = {
    AuthType.API_KEY: ApiKeyData,
    AuthType.BEARER: BearerTokenData,
    AuthType.BASIC: BasicAuthData,
    AuthType.OAUTH: OAuthData,
}


class CredentialRecord(BaseModel):
    """Stored credential metadata (never carries the secret)."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tool_id: str
    auth_type: AuthType
    encryption_key_id: str
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_used: datetime | None = None
    usage_count: int = 0


class CredentialSummary(CredentialRecord):
    """List view with expiry flags."""

    is_expired: bool = False
    is_expiring_soon: bool = False


class CredentialStats(BaseModel):
    total: int = 0
    by_auth_type: dict[str, int] = Field(default_factory=dict)
    expired: int = 0
    expiring_soon: int = 0
    average_usage: float = 0.0


class RotationResult(BaseModel):
    reencrypted: int = 0
    errors: list[str] = Field(default_factory=list)


class AuthTestResult(BaseModel):
    """Outcome of an authenticated health probe."""

    success: bool
    status_code: int | None = None
    response_time_ms: float = 0.0
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
