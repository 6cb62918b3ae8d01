"""Accessors for app-scoped services created at startup."""

from __future__ import annotations

from fastapi import Request

from chatrelay.auth import get_app_settings
from chatrelay.db import get_session_factory
from chatrelay.providers import ProviderManager
from chatrelay.services.chat_service import ChatService
from chatrelay.services.rate_limiter import RateLimiter, build_rate_limiter


def get_provider_manager(request: Request) -> ProviderManager:
    """Resolve the provider manager from app state (initialize if missing)."""
    manager = getattr(request.app.state, "provider_manager", None)
    if manager is None:
        manager = ProviderManager(get_app_settings(request))
        request.app.state.provider_manager = manager
    return manager


def get_chat_service(request: Request) -> ChatService:
    service = getattr(request.app.state, "chat_service", None)
    if service:
        return service
    service = ChatService(
        get_provider_manager(request),
        get_session_factory(),
        get_app_settings(request),
    )
    request.app.state.chat_service = service
    return service


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = build_rate_limiter(get_app_settings(request))
        request.app.state.rate_limiter = limiter
    return limiter
