"""
Base provider interface.

Defines the normalized message/event types and the contract that both
upstream adapters implement.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProviderType(str, Enum):
    """Supported provider types."""

    OPENROUTER = "openrouter"
    GEMINI = "gemini"


@dataclass
class ChatMessage:
    """A single chat message."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class ChatResponse:
    """Complete chat response (non-streaming).

    Token counts are ``None`` when the upstream did not report them.
    """

    content: str
    model: str
    provider: ProviderType
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


class StreamEventType(str, Enum):
    START = "start"
    CONTENT = "content"
    DONE = "done"
    ERROR = "error"


@dataclass
class StreamEvent:
    """
    One normalized event from an upstream stream.

    ``content`` events carry ``delta`` (incremental text), ``content``
    (cumulative text so far), or both. ``done`` and ``error`` are terminal.
    """

    type: StreamEventType
    delta: str | None = None
    content: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.DONE, StreamEventType.ERROR)

    @classmethod
    def start(cls, **metadata: Any) -> "StreamEvent":
        return cls(StreamEventType.START, metadata=metadata)

    @classmethod
    def text(cls, delta: str | None = None, content: str | None = None) -> "StreamEvent":
        return cls(StreamEventType.CONTENT, delta=delta, content=content)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(StreamEventType.DONE)

    @classmethod
    def failed(cls, message: str) -> "StreamEvent":
        return cls(StreamEventType.ERROR, error=message)


class BaseProvider(ABC):
    """
    Abstract base class for upstream LLM adapters.

    ``chat_stream`` never raises for upstream failures: it yields exactly one
    terminal event (``done`` or ``error``) as its last item. It may stop
    without a terminal event only when ``cancel_event`` is set.
    """

    provider_type: ProviderType
    display_name: str

    async def aclose(self) -> None:
        """Close any underlying resources (optional)."""
        return None

    @abstractmethod
    async def chat(self, messages: list[ChatMessage], model: str) -> ChatResponse:
        """
        Send a chat request and wait for the complete response.

        Raises:
            ProviderError: If the provider returns an error
            ProviderUnavailableError: If the provider is not available
        """
        ...

    @abstractmethod
    def chat_stream(
        self,
        messages: list[ChatMessage],
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Send a chat request and stream normalized events as they arrive.

        Yields:
            StreamEvent objects, ending with exactly one terminal event
        """
        ...
