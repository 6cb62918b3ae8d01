"""Upstream LLM provider adapters."""

from chatrelay.providers.base import (
    BaseProvider,
    ChatMessage,
    ChatResponse,
    ProviderType,
    StreamEvent,
    StreamEventType,
)
from chatrelay.providers.frame_parser import JsonFrameParser
from chatrelay.providers.gemini import GeminiProvider
from chatrelay.providers.manager import ProviderManager
from chatrelay.providers.openrouter import OpenRouterProvider

__all__ = [
    "BaseProvider",
    "ChatMessage",
    "ChatResponse",
    "GeminiProvider",
    "JsonFrameParser",
    "OpenRouterProvider",
    "ProviderManager",
    "ProviderType",
    "StreamEvent",
    "StreamEventType",
]
