"""Tool and Protocol Schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from conductor_auth.schemas import AuthType

ToolStatus = Literal["active", "inactive", "deprecated"]


class AuthConfig(BaseModel):
    """Auth requirement a tool advertises."""

    type: AuthType | None = None
    required: bool = False


class ToolInfo(BaseModel):
    """Registered tool endpoint."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    version: str
    description: str | None = None
    endpoint: str
    capabilities: list[str] = Field(default_factory=list)
    auth_config: AuthConfig = Field(default_factory=AuthConfig)
    tool_schema: dict[str, Any] | None = None
    status: ToolStatus = "active"
    last_checked: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ============================================================================
# WIRE ENVELOPE
# ============================================================================


class ProtocolRequest(BaseModel):
    method: str
    params: dict[str, Any] | None = None
    id: str | int | None = None


class ProtocolError(BaseModel):
    code: int
    message: str
    data: Any = None


class ProtocolResponse(BaseModel):
    id: str | int | None = None
    result: Any = None
    error: ProtocolError | None = None


# ============================================================================
# CLIENT
# ============================================================================


class ClientOptions(BaseModel):
    """Per-call overrides; unset fields fall back to Settings."""

    timeout: float | None = Field(default=None, gt=0)
    retry_attempts: int | None = Field(default=None, ge=0)
    retry_delay: float | None = Field(default=None, ge=0)
    user_agent: str | None = None
    validate_response: bool | None = None


class OperationResult(BaseModel):
    """Uniform outcome of a protocol call."""

    success: bool
    data: Any = None
    error: str | None = None
    error_type: str | None = None  # auth, transport, timeout, cancelled, protocol, validation
    response_time_ms: float = 0.0
    request_id: str
    credential_id: str | None = None
    attempts: int = 0


class ClientStats(BaseModel):
    request_count: int = 0
    active_requests: int = 0


# ============================================================================
# DISCOVERY
# ============================================================================


class ToolCandidate(BaseModel):
    """Tool description parsed from a capability probe."""

    name: str
    version: str = "1.0.0"
    description: str | None = None
    endpoint: str
    capabilities: list[str] = Field(default_factory=list)
    auth_config: AuthConfig = Field(default_factory=AuthConfig)
    tool_schema: dict[str, Any] | None = None
    discovery_data: dict[str, Any] | None = None


class DiscoveryOptions(BaseModel):
    timeout: float | None = Field(default=None, gt=0)
    retry_attempts: int | None = Field(default=None, ge=0)
    retry_delay: float | None = Field(default=None, ge=0)
    max_concurrency: int | None = Field(default=None, ge=1)
    cache_timeout: float | None = Field(default=None, ge=0)


class ToolDiscoveryResult(BaseModel):
    endpoint: str
    status: Literal["success", "error", "timeout"]
    tools: list[ToolCandidate] = Field(default_factory=list)
    error: str | None = None
    response_time_ms: float = 0.0
    cached: bool = False
    discovered_at: datetime | None = None


class SaveToolsResult(BaseModel):
    saved: list[ToolInfo] = Field(default_factory=list)
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class RefreshResult(BaseModel):
    updated: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class DiscoveryStats(BaseModel):
    cache_size: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    probes: int = 0
    in_flight: int = 0
    tools_by_status: dict[str, int] = Field(default_factory=dict)
