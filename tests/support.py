"""Shared test doubles and helpers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from chatrelay.db.models import User
from chatrelay.providers import ChatMessage, ChatResponse, ProviderType, StreamEvent


class ScriptedProviders:
    """
    ProviderManager stand-in that replays scripted stream events.

    Each script item is a StreamEvent, a float (sleep that many seconds), or
    an Exception (raised from the stream).
    """

    def __init__(
        self,
        script: list[StreamEvent | float | Exception] | None = None,
        chat_response: ChatResponse | Exception | None = None,
    ):
        self.script = list(script or [])
        self.chat_response = chat_response
        self.stream_calls: list[dict[str, Any]] = []
        self.chat_calls: list[dict[str, Any]] = []
        self.stream_closed = False
        self.configured_providers = ["openrouter"]

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        provider_name: str | None,
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.stream_calls.append(
            {"messages": messages, "provider": provider_name, "model": model}
        )
        try:
            for step in self.script:
                if isinstance(step, float):
                    await asyncio.sleep(step)
                    continue
                if isinstance(step, Exception):
                    raise step
                await asyncio.sleep(0)
                yield step
        finally:
            self.stream_closed = True

    async def chat(
        self,
        messages: list[ChatMessage],
        provider_name: str | None,
        model: str,
    ) -> ChatResponse:
        self.chat_calls.append({"messages": messages, "provider": provider_name, "model": model})
        if isinstance(self.chat_response, Exception):
            raise self.chat_response
        if self.chat_response is None:
            return ChatResponse(content="", model=model, provider=ProviderType.OPENROUTER)
        return self.chat_response

    async def aclose(self) -> None:
        return None


def delta(text: str) -> StreamEvent:
    return StreamEvent.text(delta=text)


def auth_headers(user: User) -> dict[str, str]:
    return {"X-User-ID": user.id}


def parse_frames(raw: str) -> list[dict[str, Any] | str]:
    """
    Split an SSE body into frames.

    JSON ``data:`` frames are decoded to dicts; the end sentinel is returned
    as ``"[DONE]"`` and keep-alive comments as ``":ping"``.
    """
    frames: list[dict[str, Any] | str] = []
    for block in raw.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        if block.startswith(":"):
            frames.append(":" + block[1:].strip())
            continue
        assert block.startswith("data: "), block
        payload = block[len("data: "):]
        frames.append(payload if payload == "[DONE]" else json.loads(payload))
    return frames


async def collect(stream: AsyncIterator[str]) -> list[dict[str, Any] | str]:
    return parse_frames("".join([chunk async for chunk in stream]))


def frame_types(frames: list[dict[str, Any] | str]) -> list[str]:
    return [f["type"] if isinstance(f, dict) else f for f in frames]
