"""
MCP Conductor Configuration Package.

Provides Pydantic Settings loaded from environment variables.
"""

from conductor_config.settings import Settings

__all__ = ["Settings"]
