"""MCP Conductor protocol client and discovery engine."""

from conductor_tools.client import ProtocolClient
from conductor_tools.discovery import DiscoveryEngine

__all__ = ["DiscoveryEngine", "ProtocolClient"]
