"""Conductor exceptions.

Error taxonomy shared by every core component.
"""

from typing import Any


class ConductorError(Exception):
    """Base exception for the orchestration core."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(ConductorError):
    """Tool, query, collector, execution or credential missing."""

    pass


class ValidationError(ConductorError):
    """Parameter, payload or schema mismatch."""

    def __init__(self, message: str, errors: list[str] | None = None, **details: Any):
        super().__init__(message, **details)
        self.errors = errors or [message]


class AuthError(ConductorError):
    """Missing or rejected credentials. Never retried."""

    pass


class TransportError(ConductorError):
    """Network or HTTP-level failure. Retryable."""

    def __init__(self, message: str, status_code: int | None = None, **details: Any):
        super().__init__(message, **details)
        self.status_code = status_code


class OperationTimeoutError(ConductorError):
    """Deadline exceeded."""

    pass


class OperationCancelledError(ConductorError):
    """Cancellation token fired while the operation was in flight."""

    def __init__(self, message: str, reason: str = "cancelled", **details: Any):
        super().__init__(message, **details)
        self.reason = reason


class ExecutionError(ConductorError):
    """Remote tool or collector returned a failure payload."""

    pass


class ConfigurationError(ConductorError):
    """Master key or configuration unusable."""

    pass


class UnsupportedAuthTypeError(ConfigurationError):
    """Auth type tag outside api_key, bearer, basic, oauth."""

    pass


class CredentialDecryptionError(ConductorError):
    """Stored credential payload could not be decrypted."""

    pass
