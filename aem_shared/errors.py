"""
Shared error handling for the AEMaaCS client.

Every failure the client can report is expressed as an ``AEMException``
carrying an ``ErrorKind``. Transport-specific errors (``httpx`` exceptions,
HTTP status codes) are mapped here, so the retry executor and the circuit
breaker only ever reason about kinds and the ``recoverable`` flag.
"""

import asyncio
from enum import Enum
from typing import Dict, Any, Optional

import httpx
from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Error taxonomy shared by every component."""

    AUTHENTICATION = "AUTHENTICATION_ERROR"
    AUTHORIZATION = "AUTHORIZATION_ERROR"
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND_ERROR"
    NETWORK = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT_ERROR"
    SERVER = "SERVER_ERROR"
    UNKNOWN = "UNKNOWN_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"


# Kinds that signal dependency health problems
RECOVERABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER})


class OperationError(BaseModel):
    """Structured error carried by a failure envelope."""

    code: ErrorKind
    message: str
    recoverable: bool = False
    retry_after: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AEMException(Exception):
    """Base exception for client failures."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        recoverable: bool = False,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        self.message = message
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.details = details or {}
        super().__init__(message)

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get("status_code")

    def to_error(self) -> OperationError:
        """Convert to the envelope error model."""
        return OperationError(
            code=self.kind,
            message=self.message,
            recoverable=self.recoverable,
            retry_after=self.retry_after,
            details=self.details,
        )


class AuthenticationError(AEMException):
    """Credential rejected or token refresh failed."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = None):
        super().__init__(ErrorKind.AUTHENTICATION, message, False, retry_after, details)


class AuthorizationError(AEMException):
    """Credential valid but insufficient."""

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.AUTHORIZATION, message, False, None, details)


class ValidationError(AEMException):
    """Caller supplied bad input."""

    def __init__(self, message: str = "Invalid request parameters", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.VALIDATION, message, False, None, details)


class NotFoundError(AEMException):
    """Requested resource does not exist."""

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.NOT_FOUND, message, False, None, details)


class NetworkError(AEMException):
    """Connection-level failure."""

    def __init__(self, message: str = "Network connection failed", details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = 10.0):
        super().__init__(ErrorKind.NETWORK, message, True, retry_after, details)


class OperationTimeoutError(AEMException):
    """Attempt deadline exceeded."""

    def __init__(self, message: str = "Request timeout", details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = 5.0):
        super().__init__(ErrorKind.TIMEOUT, message, True, retry_after, details)


class ServerError(AEMException):
    """Remote service reported a 5xx or 429 failure."""

    def __init__(self, message: str = "Server error", details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = 30.0):
        super().__init__(ErrorKind.SERVER, message, True, retry_after, details)


class UnknownError(AEMException):
    """Catch-all for failures outside the taxonomy."""

    def __init__(self, message: str = "An unknown error occurred", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.UNKNOWN, message, False, None, details)


class CircuitBreakerOpenError(AEMException):
    """Raised when a circuit breaker rejects a call without running it."""

    def __init__(self, circuit: str, retry_after: float, next_attempt_time: Optional[float] = None):
        super().__init__(
            ErrorKind.CIRCUIT_OPEN,
            f"Circuit breaker '{circuit}' is OPEN - blocking call",
            False,
            retry_after,
            {"circuit": circuit, "next_attempt_time": next_attempt_time},
        )
        self.circuit = circuit


EXCEPTION_TYPES = {
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.AUTHORIZATION: AuthorizationError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.TIMEOUT: OperationTimeoutError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.UNKNOWN: UnknownError,
}


def exception_from_error(error: OperationError) -> AEMException:
    """Rebuild the exception subclass matching an envelope error."""
    details = dict(error.details)
    if error.code == ErrorKind.CIRCUIT_OPEN:
        exc: AEMException = CircuitBreakerOpenError(
            details.get("circuit", "unknown"),
            error.retry_after or 0.0,
            details.get("next_attempt_time"),
        )
    else:
        exc = EXCEPTION_TYPES.get(error.code, UnknownError)(error.message, details=details)

    exc.message = error.message
    exc.args = (error.message,)
    exc.recoverable = error.recoverable
    exc.retry_after = error.retry_after
    exc.details = details
    return exc


def is_recoverable(error: BaseException) -> bool:
    """Whether waiting or retrying could change the outcome of ``error``."""
    if isinstance(error, AEMException):
        return error.recoverable and error.kind in RECOVERABLE_KINDS
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, httpx.TransportError)):
        return True
    return False


def map_http_status(response: httpx.Response, context: Optional[Dict[str, Any]] = None) -> AEMException:
    """Map a non-success HTTP response to the error taxonomy."""
    status = response.status_code
    details: Dict[str, Any] = {
        "status_code": status,
        "reason": response.reason_phrase,
        "url": _request_url(response),
    }
    if context:
        details["context"] = context
    body = _safe_body(response)
    if body:
        details["body"] = body

    if status in (400, 422):
        return ValidationError(details=details)
    if status == 401:
        return AuthenticationError(details=details)
    if status == 403:
        return AuthorizationError(details=details)
    if status == 404:
        return NotFoundError(details=details)
    if status == 408:
        return OperationTimeoutError("Remote request timeout", details=details)
    if status == 429:
        return ServerError(
            "Rate limit exceeded",
            details=details,
            retry_after=_parse_retry_after(response.headers.get("retry-after"), default=60.0),
        )
    if status >= 500:
        return ServerError(f"Server error: {response.reason_phrase}", details=details)
    return UnknownError(f"HTTP {status}: {response.reason_phrase}", details=details)


def map_transport_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> AEMException:
    """Map an exception raised while talking to the remote service."""
    if isinstance(error, AEMException):
        return error

    details: Dict[str, Any] = {"original_error": str(error), "error_type": type(error).__name__}
    if context:
        details["context"] = context

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return OperationTimeoutError(details=details)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return NetworkError(details=details)
    if isinstance(error, httpx.HTTPStatusError):
        return map_http_status(error.response, context)
    return UnknownError(str(error) or "An unknown error occurred", details=details)


def _parse_retry_after(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _request_url(response: httpx.Response) -> Optional[str]:
    try:
        return str(response.request.url)
    except RuntimeError:
        return None


def _safe_body(response: httpx.Response) -> Optional[str]:
    try:
        text = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return None
    return text[:1000] if text else None
