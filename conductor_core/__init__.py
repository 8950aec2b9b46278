"""MCP Conductor core: error taxonomy, cancellation, runtime wiring."""
