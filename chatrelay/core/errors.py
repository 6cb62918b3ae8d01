"""
Structured error handling with stable error codes.

No stack traces are exposed to clients. All errors are mapped to
stable, documented error codes for reliable client handling.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"
    METHOD_NOT_ALLOWED = "E1003"
    REQUEST_TOO_LARGE = "E1004"
    RATE_LIMITED = "E1005"

    # Authentication errors (2xxx)
    UNAUTHORIZED = "E2000"

    # Provider errors (4xxx)
    PROVIDER_UNAVAILABLE = "E4000"
    PROVIDER_ERROR = "E4001"
    MODEL_NOT_FOUND = "E4002"
    STREAMING_ERROR = "E4003"
    PROVIDER_BAD_RESPONSE = "E4004"
    PROVIDER_AUTH_FAILED = "E4005"
    PROVIDER_RATE_LIMITED = "E4006"

    # Resource errors (5xxx)
    PERSISTENCE_FAILED = "E5003"


@dataclass(frozen=True)
class ErrorResponse:
    """Structured error response for API.

    Format: {error: {code, message, request_id, details?}}
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        error: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.request_id:
            error["request_id"] = self.request_id
        if self.details:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    """Base application error with structured error detail."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self, request_id: str | None = None) -> ErrorResponse:
        """Create error response with request ID."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            request_id=request_id,
            details=self.details,
        )


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, 400, details)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(ErrorCode.NOT_FOUND, message, 404)


class UnauthorizedError(AppError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401)


class RateLimitedError(AppError):
    """Per-user request budget exhausted; carries the window reset time (epoch ms)."""

    def __init__(self, reset_time: int, message: str = "Rate limit exceeded"):
        self.reset_time = reset_time
        super().__init__(ErrorCode.RATE_LIMITED, message, 429, {"reset_time": reset_time})


class ProviderError(AppError):
    """Provider error (502)."""

    def __init__(
        self, message: str = "Provider error", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_ERROR, message, 502, details)


class ProviderRateLimitedError(AppError):
    """Upstream provider throttled the request (503)."""

    def __init__(
        self,
        message: str = "Provider rate limit exceeded",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.PROVIDER_RATE_LIMITED, message, 503, details)


class ProviderUnavailableError(AppError):
    """Provider unavailable (503)."""

    def __init__(
        self, message: str = "Provider unavailable", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_UNAVAILABLE, message, 503, details)


class NoProviderAvailableError(ProviderUnavailableError):
    """No upstream provider has credentials configured (503)."""

    def __init__(self, message: str = "No AI providers available. Please configure API keys."):
        super().__init__(message)


class ProviderBadResponseError(AppError):
    """Provider returned malformed response (502)."""

    def __init__(
        self, message: str = "Provider returned invalid response", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_BAD_RESPONSE, message, 502, details)


class ProviderAuthError(AppError):
    """Provider authentication failed (401/403)."""

    def __init__(
        self,
        message: str = "Provider authentication failed",
        status_code: int = 401,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.PROVIDER_AUTH_FAILED, message, status_code, details)


class UpstreamStreamError(AppError):
    """Upstream stream failed or produced no usable content (502)."""

    def __init__(self, message: str = "Upstream stream failed", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.STREAMING_ERROR, message, 502, details)


class ModelNotFoundError(AppError):
    """Requested model not found upstream (404)."""

    def __init__(self, message: str = "Model not found", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.MODEL_NOT_FOUND, message, 404, details)


class ModelUnavailableError(AppError):
    """No catalog model could be resolved for the request (500)."""

    def __init__(self, message: str = "No available AI models found"):
        super().__init__(ErrorCode.MODEL_NOT_FOUND, message, 500)


class PersistenceError(AppError):
    """Writing a completed exchange failed (500)."""

    def __init__(
        self,
        message: str = "Database write failed after stream completion",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.PERSISTENCE_FAILED, message, 500, details)
