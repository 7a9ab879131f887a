"""Error types and the standard error schema.

Exceptions raised by this package derive from InsightError. Persistence API
failures are parsed into an ErrorResponse so callers (and failure
notifications) see one consistent shape regardless of what the server sent.

Persistence error body format (as sent by the API):
{
    "error": "title is required"
}

ErrorResponse format (normalized):
{
    "error": "ValidationError",
    "message": "title is required",
    "status_code": 400,
    "details": {"path": "/api/goals"},
    "timestamp": "2026-01-29T12:00:00Z"
}
"""

from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorType:
    """Standard error type codes."""

    VALIDATION_ERROR = "ValidationError"
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    FORBIDDEN = "Forbidden"
    CONFLICT = "Conflict"
    RATE_LIMITED = "RateLimited"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    INTERNAL_ERROR = "InternalError"
    TRANSPORT_ERROR = "TransportError"
    NO_OPEN_BATCH = "NoOpenBatch"
    UNKNOWN_SUGGESTION = "UnknownSuggestion"


_STATUS_ERROR_TYPES = {
    400: ErrorType.VALIDATION_ERROR,
    401: ErrorType.UNAUTHORIZED,
    403: ErrorType.FORBIDDEN,
    404: ErrorType.NOT_FOUND,
    409: ErrorType.CONFLICT,
    422: ErrorType.VALIDATION_ERROR,
    429: ErrorType.RATE_LIMITED,
    502: ErrorType.SERVICE_UNAVAILABLE,
    503: ErrorType.SERVICE_UNAVAILABLE,
    504: ErrorType.SERVICE_UNAVAILABLE,
}


def error_type_for_status(status_code: int) -> str:
    """Map an HTTP status code to an ErrorType code."""
    return _STATUS_ERROR_TYPES.get(status_code, ErrorType.INTERNAL_ERROR)


class ErrorResponse(BaseModel):
    """Normalized error description.

    Attributes:
        error: Error type/code (see ErrorType)
        message: Human-readable message suitable for an operator
        status_code: HTTP status from the persistence API, if any
        details: Optional additional context
        timestamp: When the error occurred (ISO 8601)
    """

    error: str = Field(..., examples=["ValidationError", "NotFound"])
    message: str = Field(..., examples=["title is required"])
    status_code: Optional[int] = Field(default=None, examples=[400])
    details: Optional[dict[str, Any]] = Field(default=None)
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class InsightError(Exception):
    """Base class for errors raised by the insight apply core."""

    error_type: str = ErrorType.INTERNAL_ERROR

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.error_type, message=str(self))


class PersistenceError(InsightError):
    """A persistence API call failed (non-2xx response or transport failure)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        self.error_type = error_type or (
            error_type_for_status(status_code)
            if status_code is not None
            else ErrorType.TRANSPORT_ERROR
        )
        self.details = details
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Transport failures and 5xx/429 responses are transient."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error_type,
            message=str(self),
            status_code=self.status_code,
            details=self.details,
        )


class NoOpenBatchError(InsightError):
    """apply() was called while no suggestion batch is open."""

    error_type = ErrorType.NO_OPEN_BATCH

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No suggestion batch is open (key {key!r})")


class UnknownSuggestionError(InsightError):
    """A suggestion key does not belong to the batch under review."""

    error_type = ErrorType.UNKNOWN_SUGGESTION

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Unknown suggestion key {key!r}")


def describe_error(error: BaseException) -> str:
    """Short operator-facing description of any failure reason."""
    if isinstance(error, InsightError):
        return str(error)
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__
