"""MCP Conductor collector runner."""

from conductor_collectors.runner import CollectorRunner, inspect_collector_file

__all__ = ["CollectorRunner", "inspect_collector_file"]
