"""MCP Conductor query execution engine."""

from conductor_query.engine import QueryExecutionEngine

__all__ = ["QueryExecutionEngine"]
