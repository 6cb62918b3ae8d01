"""
Business logic services.

Orchestrates providers, database access, rate limiting, and usage accounting.
"""

from chatrelay.services.chat_service import ChatService, PreparedChat
from chatrelay.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimiter,
    RateLimitResult,
    RedisRateLimiter,
    build_rate_limiter,
)
from chatrelay.services.usage import UsageResult, compute_usage, estimate_tokens

__all__ = [
    "ChatService",
    "InMemoryRateLimiter",
    "PreparedChat",
    "RateLimitResult",
    "RateLimiter",
    "RedisRateLimiter",
    "UsageResult",
    "build_rate_limiter",
    "compute_usage",
    "estimate_tokens",
]
