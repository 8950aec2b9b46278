"""MCP Conductor persistence layer."""

from conductor_memory.database import (
    check_db_connection,
    create_engine,
    create_session_factory,
    init_schema,
)
from conductor_memory.stores import ConfigurationStore

__all__ = [
    "ConfigurationStore",
    "check_db_connection",
    "create_engine",
    "create_session_factory",
    "init_schema",
]
