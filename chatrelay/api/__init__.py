"""API routers."""

from chatrelay.api.chat import router as chat_router
from chatrelay.api.conversations import router as conversations_router
from chatrelay.api.health import router as health_router
from chatrelay.api.models import router as models_router
from chatrelay.api.usage import router as usage_router

__all__ = [
    "chat_router",
    "conversations_router",
    "health_router",
    "models_router",
    "usage_router",
]
