"""MCP Conductor credential store."""

from conductor_auth.schemas import AuthType
from conductor_auth.store import CredentialStore, build_auth_headers

__all__ = ["AuthType", "CredentialStore", "build_auth_headers"]
