"""
errors.py - Domain-specific exceptions for aac_sync.

All exceptions inherit from AACSyncError for unified handling.
Each exception type represents a distinct failure mode.
"""

from typing import Any


class AACSyncError(Exception):
    """Base exception for all aac_sync errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


# =============================================================================
# Remote API Gateway
# =============================================================================

class GatewayError(AACSyncError):
    """Base class for failures raised by the remote API gateway."""


class NetworkUnavailable(GatewayError):
    """
    Raised on transport-level failure (connect error, timeout, reset).

    Safe to retry later: the server may or may not have seen the request.
    """

    def __init__(self, message: str, endpoint: str | None = None) -> None:
        context = {}
        if endpoint is not None:
            context["endpoint"] = endpoint
        super().__init__(message, context=context)
        self.endpoint = endpoint


class HttpError(GatewayError):
    """
    Raised when the server answers with a non-2xx status.

    The caller decides the retry policy.
    """

    def __init__(
        self,
        status: int,
        endpoint: str | None = None,
        server_message: str | None = None,
    ) -> None:
        context: dict[str, Any] = {"status": status}
        if endpoint is not None:
            context["endpoint"] = endpoint
        if server_message:
            context["server_message"] = server_message
        super().__init__(f"Server error: {status}", context=context)
        self.status = status
        self.endpoint = endpoint
        self.server_message = server_message

    @property
    def is_retryable(self) -> bool:
        return self.status in (408, 429) or self.status >= 500


class DecodingFailed(GatewayError):
    """
    Raised when a response body does not match the expected shape.

    Never retried: the payload is permanently unprocessable for this client.
    """

    def __init__(self, message: str, endpoint: str | None = None) -> None:
        context = {}
        if endpoint is not None:
            context["endpoint"] = endpoint
        super().__init__(message, context=context)
        self.endpoint = endpoint


class NotAuthenticated(GatewayError):
    """Raised before any network call when no credential is available."""

    def __init__(self, message: str = "Please log in to continue") -> None:
        super().__init__(message)


# =============================================================================
# Local persistence
# =============================================================================

class PersistenceError(AACSyncError):
    """
    Raised when a local entity-store operation fails.

    Wraps sqlite3 errors with the operation that was being attempted.
    The in-flight transaction is rolled back before this is raised.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        super().__init__(message, context=context)
        self.operation = operation


class CredentialStoreError(AACSyncError):
    """Raised when the credential store cannot be read or written."""


class ValidationError(AACSyncError):
    """
    Raised when input validation fails.

    This includes out-of-range settings values and unknown enum tags.
    """

    def __init__(
        self, message: str, field: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if field is not None:
            context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.field = field
        self.value = value


# =============================================================================
# Instructions, generation and peers
# =============================================================================

class MalformedInstruction(AACSyncError):
    """
    Raised when a raw instruction payload cannot be parsed.

    Malformed instructions are discarded, never retried.
    """

    def __init__(self, reason: str, raw_type: Any = None) -> None:
        context = {}
        if raw_type is not None:
            context["type"] = raw_type
        super().__init__(f"Malformed instruction: {reason}", context=context)
        self.reason = reason
        self.raw_type = raw_type


class GenerationError(AACSyncError):
    """Raised when the phrase generation service cannot produce a pack."""


class PeerUnreachable(AACSyncError):
    """Raised when a peer message cannot be delivered immediately."""

    def __init__(self, message: str, peer: str | None = None) -> None:
        context = {}
        if peer is not None:
            context["peer"] = peer
        super().__init__(message, context=context)
        self.peer = peer
