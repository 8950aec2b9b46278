"""SQLAlchemy Async Models.

Driver: aiosqlite or asyncpg. Timestamps are naive UTC.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

TOOL_STATUSES = ("active", "inactive", "deprecated")
AUTH_TYPES = ("api_key", "bearer", "basic", "oauth")
EXECUTION_STATUSES = ("pending", "running", "completed", "failed", "cancelled", "timeout")
CONFIG_CATEGORIES = ("security", "performance", "discovery", "logging", "general")


def utcnow() -> datetime:
    """Naive UTC now, the format every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Tool(Base):
    """Remote tool endpoint discovered by the discovery engine."""

    __tablename__ = "tools"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_tools_name_version"),
        CheckConstraint(f"status IN {TOOL_STATUSES}", name="ck_tools_status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, index=True)
    version = Column(String(50), nullable=False)
    description = Column(Text)
    endpoint = Column(Text, nullable=False, index=True)
    capabilities = Column(JSON, nullable=False, default=list)
    auth_config = Column(JSON, nullable=False, default=dict)
    tool_schema = Column("schema", JSON)
    discovery_data = Column(JSON)
    status = Column(String(20), nullable=False, default="active", index=True)
    last_checked = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Credential(Base):
    """Encrypted secret bound to a tool."""

    __tablename__ = "credentials"
    __table_args__ = (
        CheckConstraint(f"auth_type IN {AUTH_TYPES}", name="ck_credentials_auth_type"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tool_id = Column(
        String(36), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False, index=True
    )
    auth_type = Column(String(20), nullable=False, index=True)
    encrypted_data = Column(LargeBinary, nullable=False)  # salt || iv || ciphertext
    encryption_key_id = Column(String(64), nullable=False)
    expires_at = Column(DateTime, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_used = Column(DateTime)
    usage_count = Column(Integer, nullable=False, default=0)


class Query(Base):
    """Reusable, parameterized operation bound to a tool."""

    __tablename__ = "queries"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    tool_id = Column(
        String(36), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False, index=True
    )
    schema_version = Column(String(20), nullable=False, default="1.0.0")
    parameters = Column(JSON, nullable=False, default=dict)  # JSON Schema
    operation = Column(JSON, nullable=False)
    output_schema = Column(JSON)
    timeout = Column(Integer)  # seconds, overrides QUERY_TIMEOUT
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    execution_count = Column(Integer, nullable=False, default=0, index=True)
    last_executed = Column(DateTime, index=True)


class Execution(Base):
    """One run of a query."""

    __tablename__ = "executions"
    __table_args__ = (
        CheckConstraint(f"status IN {EXECUTION_STATUSES}", name="ck_executions_status"),
        CheckConstraint(
            "(status IN ('completed', 'failed', 'cancelled', 'timeout') AND completed_at IS NOT NULL)"
            " OR (status IN ('pending', 'running') AND completed_at IS NULL)",
            name="ck_executions_completed_at",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    query_id = Column(
        String(36), ForeignKey("queries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    parameters = Column(JSON)
    collector_inputs = Column(JSON)
    credential_refs = Column(JSON)
    status = Column(String(20), nullable=False, default="pending", index=True)
    started_at = Column(DateTime, default=utcnow, index=True)
    completed_at = Column(DateTime, index=True)
    result = Column(JSON)
    error_details = Column(JSON)


class Collector(Base):
    """External program registered to produce query input."""

    __tablename__ = "collectors"
    __table_args__ = (
        CheckConstraint("file_path != ''", name="ck_collectors_file_path"),
        CheckConstraint("timeout > 0", name="ck_collectors_timeout"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    file_path = Column(Text, nullable=False)
    input_schema = Column(JSON, nullable=False)
    output_schema = Column(JSON, nullable=False)
    timeout = Column(Integer, nullable=False, default=30)  # seconds
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    version = Column(String(50), nullable=False, default="1.0.0")
    environment = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    last_executed = Column(DateTime, index=True)
    execution_count = Column(Integer, nullable=False, default=0)
    total_execution_ms = Column(Integer, nullable=False, default=0)


class ConfigEntry(Base):
    """Key-value configuration row."""

    __tablename__ = "configuration"
    __table_args__ = (
        CheckConstraint(f"category IN {CONFIG_CATEGORIES}", name="ck_configuration_category"),
    )

    key = Column(String(255), primary_key=True)
    value = Column(JSON, nullable=False)
    category = Column(String(20), nullable=False, default="general", index=True)
    description = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
