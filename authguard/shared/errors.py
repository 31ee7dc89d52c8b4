"""
Shared error handling for AuthGuard.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel

from authguard.shared.logging import request_id_var


class ErrorKind(str, Enum):
    """Error kinds callers can branch on."""
    CONFIGURATION = "CONFIGURATION_ERROR"
    TRANSPORT = "TRANSPORT_ERROR"
    PROTOCOL = "PROTOCOL_ERROR"
    RESPONSE_PARSE = "RESPONSE_PARSE_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_BREAKER_OPEN"
    CACHE_CORRUPTED = "CACHE_CORRUPTED"
    CACHE_WRITE = "CACHE_WRITE_ERROR"
    BREAKER_STATE = "BREAKER_STATE_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AuthGuardError(Exception):
    """Base exception for AuthGuard."""

    kind: ErrorKind

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = self.kind.value
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(AuthGuardError):
    """Missing or invalid configuration. Fatal at startup."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class TransportError(AuthGuardError):
    """Connection, TLS or timeout failure talking to the credentials endpoint."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str = "Transport error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ProtocolError(AuthGuardError):
    """Non-success HTTP status from the credentials endpoint."""

    kind = ErrorKind.PROTOCOL

    def __init__(self, status_code: int, url: str, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        details = {"status_code": status_code, "url": url, **(details or {})}
        super().__init__(f"Credentials request to {url} failed with status {status_code}", details)


class ResponseParseError(AuthGuardError):
    """A success response whose body is not a credential payload."""

    kind = ErrorKind.RESPONSE_PARSE

    def __init__(self, message: str = "Failed to parse credentials response", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class CircuitBreakerOpenError(AuthGuardError):
    """Raised when the circuit breaker blocks a request."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str = "Circuit breaker is open; skipping credentials call", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class CacheCorruptedError(AuthGuardError):
    """Cache file exists but cannot be parsed."""

    kind = ErrorKind.CACHE_CORRUPTED

    def __init__(self, message: str = "Cached credentials are unreadable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class CacheWriteError(AuthGuardError):
    """Persisting credentials to the cache failed."""

    kind = ErrorKind.CACHE_WRITE

    def __init__(self, message: str = "Failed to write credentials cache", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class BreakerStateError(AuthGuardError):
    """Reading or persisting circuit breaker state failed."""

    kind = ErrorKind.BREAKER_STATE

    def __init__(self, message: str = "Circuit breaker state unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
