"""
Application Settings (Pydantic Settings).

Loads configuration from environment variables (.env file or system env).

Only the values the orchestration core consumes live here: database URL, key
derivation, timeouts, retry policies, concurrency limits and cache TTLs.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> str:
    return str(Path.home() / ".local" / "share" / "mcp-conductor")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every default mirrors the policy constants of the tool catalog; override any
    of them through the environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # ========================================================================
    # DATABASE
    # ========================================================================
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./mcp-conductor.db",
        description="Async connection string (sqlite+aiosqlite or postgresql+asyncpg)",
    )
    DATABASE_ECHO: bool = Field(default=False, description="Log every SQL statement")
    DATABASE_AUTO_CREATE: bool = Field(
        default=True, description="Create missing tables when the runtime starts"
    )

    DATA_DIR: str = Field(default_factory=_default_data_dir)

    # ========================================================================
    # CREDENTIAL SECURITY
    # ========================================================================
    CREDENTIAL_KEY_PATH: str = Field(
        default="",
        description="Master key file (defaults to <DATA_DIR>/master.key)",
    )
    KEY_DERIVATION_ROUNDS: int = Field(
        default=100_000,
        ge=1_000,
        description="PBKDF2-SHA256 iterations per encryption",
    )
    CREDENTIAL_CLEANUP_DAYS: int = Field(
        default=30,
        ge=0,
        description="Purge credentials expired for longer than this many days",
    )
    CREDENTIAL_EXPIRING_SOON_DAYS: int = Field(default=7, ge=0)
    CREDENTIAL_TEST_TIMEOUT: float = Field(default=10.0, gt=0)

    # ========================================================================
    # PROTOCOL CLIENT
    # ========================================================================
    QUERY_TIMEOUT: float = Field(default=30.0, gt=0, description="Seconds per query execution")
    PROTOCOL_RETRY_ATTEMPTS: int = Field(default=3, ge=0)
    PROTOCOL_RETRY_DELAY: float = Field(default=1.0, ge=0, description="Backoff base (seconds)")
    PROTOCOL_USER_AGENT: str = Field(default="mcp-conductor/0.1.0")
    PROTOCOL_VALIDATE_RESPONSE: bool = Field(default=True)
    HEALTH_CHECK_TIMEOUT: float = Field(default=10.0, gt=0)

    # ========================================================================
    # DISCOVERY
    # ========================================================================
    DISCOVERY_TIMEOUT: float = Field(default=30.0, gt=0)
    DISCOVERY_RETRY_ATTEMPTS: int = Field(default=3, ge=0)
    DISCOVERY_RETRY_DELAY: float = Field(default=1.0, ge=0)
    DISCOVERY_MAX_CONCURRENCY: int = Field(default=5, ge=1)
    DISCOVERY_CACHE_TIMEOUT: float = Field(
        default=3600.0, ge=0, description="Capability cache TTL (seconds)"
    )
    DISCOVERY_LOCAL_TIMEOUT: float = Field(default=5.0, gt=0)
    DISCOVERY_LOCAL_ENDPOINTS: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:3001",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:3001",
            "http://127.0.0.1:8000",
        ]
    )
    MCP_ENDPOINTS: str = Field(default="", description="Comma-separated endpoint hints")

    # ========================================================================
    # COLLECTORS
    # ========================================================================
    COLLECTOR_DEFAULT_TIMEOUT: int = Field(default=30, gt=0)
    COLLECTOR_TEST_TIMEOUT: int = Field(default=10, gt=0)
    COLLECTOR_KILL_GRACE_SECONDS: float = Field(default=5.0, ge=0)

    # ========================================================================
    # OPENTELEMETRY
    # ========================================================================
    OTEL_EXPORTER_OTLP_ENDPOINT: str = Field(default="http://localhost:4317")
    OTEL_SERVICE_NAME: str = Field(default="mcp-conductor")
    OTEL_TRACES_ENABLED: bool = Field(default=False)

    # ========================================================================
    # LOGGING
    # ========================================================================
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    LOG_FORMAT: str = Field(default="json", pattern="^(json|text)$")

    # ========================================================================
    # DEPLOYMENT
    # ========================================================================
    ENVIRONMENT: str = Field(
        default="development", pattern="^(development|staging|production)$"
    )

    @property
    def credential_key_path(self) -> Path:
        """Resolved master key file location."""
        if self.CREDENTIAL_KEY_PATH:
            return Path(self.CREDENTIAL_KEY_PATH).expanduser()
        return Path(self.DATA_DIR).expanduser() / "master.key"
