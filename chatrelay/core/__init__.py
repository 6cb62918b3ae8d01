"""Core module with logging, errors, metrics, and middleware."""

from chatrelay.core.errors import (
    AppError,
    ErrorCode,
    ErrorResponse,
    ModelNotFoundError,
    ModelUnavailableError,
    NoProviderAvailableError,
    NotFoundError,
    PersistenceError,
    ProviderAuthError,
    ProviderBadResponseError,
    ProviderError,
    ProviderRateLimitedError,
    ProviderUnavailableError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamStreamError,
    ValidationError,
)
from chatrelay.core.logging import (
    get_logger,
    request_id_ctx,
    setup_logging,
    stream_id_ctx,
    user_id_ctx,
)

__all__ = [
    "AppError",
    "ErrorCode",
    "ErrorResponse",
    "ModelNotFoundError",
    "ModelUnavailableError",
    "NoProviderAvailableError",
    "NotFoundError",
    "PersistenceError",
    "ProviderAuthError",
    "ProviderBadResponseError",
    "ProviderError",
    "ProviderRateLimitedError",
    "ProviderUnavailableError",
    "RateLimitedError",
    "UnauthorizedError",
    "UpstreamStreamError",
    "ValidationError",
    "get_logger",
    "request_id_ctx",
    "setup_logging",
    "stream_id_ctx",
    "user_id_ctx",
]
