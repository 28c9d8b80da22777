"""Error taxonomy for box lifecycle and deployment operations.

Every error raised by a service, handler, or provider adapter derives from
``BoxPlaneError`` and carries a stable ``ErrorCode``. The HTTP layer renders
``to_dict()`` with the mapped status; the workflow engine consults
``retryable`` to decide whether another attempt is worthwhile.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced to API clients and step rows."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    INVALID_STATUS = "INVALID_STATUS"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS_BY_CODE: Mapping[ErrorCode, int] = MappingProxyType(
    {
        ErrorCode.VALIDATION_FAILED: 400,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.ALREADY_EXISTS: 409,
        ErrorCode.INVALID_STATUS: 409,
        ErrorCode.PROVIDER_ERROR: 502,
        ErrorCode.TIMEOUT: 504,
        ErrorCode.INTERNAL_ERROR: 500,
    }
)


class BoxPlaneError(Exception):
    """Base error for all box control-plane operations.

    Attributes:
        code: ErrorCode for this failure class.
        message: Human-readable message, safe to show to the box owner.
        details: Optional structured context (never secrets).
        retryable: Whether re-running the failed action may succeed.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.message = message
        self.details = dict(details or {})
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}, {self.message!r})"


class ValidationFailedError(BoxPlaneError):
    """Input rejected before any side effect happened."""

    code = ErrorCode.VALIDATION_FAILED


class NotFoundError(BoxPlaneError):
    """Requested entity does not exist (or is not visible to the caller)."""

    code = ErrorCode.NOT_FOUND


class AlreadyExistsError(BoxPlaneError):
    """A uniqueness constraint would be violated."""

    code = ErrorCode.ALREADY_EXISTS


class InvalidStatusError(BoxPlaneError):
    """Operation is not allowed in the entity's current status."""

    code = ErrorCode.INVALID_STATUS


class ProviderError(BoxPlaneError):
    """Compute provider call failed.

    Carries the upstream HTTP status (0 when the call never produced a
    response) and the provider/operation that failed, for logging.
    """

    code = ErrorCode.PROVIDER_ERROR
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 0,
        provider: str | None = None,
        operation: str | None = None,
        details: Mapping[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        self.operation = operation
        merged = dict(details or {})
        if status_code:
            merged.setdefault("status_code", status_code)
        if provider:
            merged.setdefault("provider", provider)
        if operation:
            merged.setdefault("operation", operation)
        super().__init__(message, details=merged, retryable=retryable)


class InstanceExitedError(ProviderError):
    """Instance stopped running while we waited for it to become healthy."""

    retryable = False


class InstanceCrashLoopError(ProviderError):
    """Instance keeps restarting instead of becoming healthy."""

    retryable = False


class DeployTimeoutError(BoxPlaneError):
    """A bounded wait (health check, job execution) ran out of time."""

    code = ErrorCode.TIMEOUT


class InternalError(BoxPlaneError):
    """Unexpected failure inside the control plane."""

    code = ErrorCode.INTERNAL_ERROR


def error_message(exc: BaseException) -> str:
    """Return the owner-facing message for any exception."""
    if isinstance(exc, BoxPlaneError):
        return exc.message
    return str(exc) or type(exc).__name__
