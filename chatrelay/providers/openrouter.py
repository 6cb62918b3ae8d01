"""
OpenRouter provider adapter.

OpenRouter speaks the OpenAI chat-completions protocol. Streaming responses
are Server-Sent Events: ``data: <json>`` lines, terminated by ``data: [DONE]``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from chatrelay.core import AppError, get_logger
from chatrelay.providers.base import (
    BaseProvider,
    ChatMessage,
    ChatResponse,
    ProviderType,
    StreamEvent,
)
from chatrelay.providers.http_client import (
    create_http_client,
    open_stream,
    parse_json,
    raise_for_status,
    request_with_retries,
)

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str) -> StreamEvent | None:
    """
    Normalize one SSE line into a StreamEvent.

    Returns ``StreamEvent.done()`` for the ``[DONE]`` sentinel, a content event
    for a chunk carrying ``choices[0].delta.content``, and ``None`` for
    anything else (comments, keep-alives, role-only chunks, malformed JSON).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if payload == DONE_SENTINEL:
        return StreamEvent.done()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream chunk", data={"chunk": payload[:200]})
        return None

    try:
        delta = data["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    if delta:
        return StreamEvent.text(delta=delta)
    return None


class OpenRouterProvider(BaseProvider):
    """Adapter for the OpenRouter chat-completions API."""

    provider_type = ProviderType.OPENROUTER
    display_name = "OpenRouter"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        referer: str = "http://localhost:3000",
        app_title: str = "AI Chat App",
        timeout_seconds: int = 120,
        max_retries: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_retries = max_retries
        self._client = create_http_client(
            base_url,
            timeout_seconds,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "HTTP-Referer": referer,
                "X-Title": app_title,
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _payload(self, messages: list[ChatMessage], model: str, stream: bool) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": stream,
        }

    async def chat(self, messages: list[ChatMessage], model: str) -> ChatResponse:
        response = await request_with_retries(
            self._client,
            "POST",
            "/chat/completions",
            max_retries=self.max_retries,
            json=self._payload(messages, model, stream=False),
        )
        raise_for_status(response)
        data = parse_json(response)

        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return ChatResponse(
            content=content,
            model=data.get("model") or model,
            provider=self.provider_type,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        )

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        try:
            response = await open_stream(
                self._client,
                "POST",
                "/chat/completions",
                max_retries=self.max_retries,
                json=self._payload(messages, model, stream=True),
                headers={"Accept": "text/event-stream"},
            )
        except AppError as exc:
            logger.warning(
                "OpenRouter stream request failed",
                data={"code": exc.code.value, "model": model},
            )
            yield StreamEvent.failed(exc.message)
            return

        try:
            async for line in response.aiter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("OpenRouter stream cancelled", data={"model": model})
                    return
                event = parse_sse_line(line)
                if event is None:
                    continue
                yield event
                if event.is_terminal:
                    return
            # Body ended without the sentinel.
            yield StreamEvent.done()
        except httpx.HTTPError as exc:
            logger.warning(
                "OpenRouter stream interrupted",
                data={"error": str(exc), "model": model},
            )
            yield StreamEvent.failed("Upstream stream interrupted")
        finally:
            await response.aclose()
