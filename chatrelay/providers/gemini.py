"""
Google Gemini provider adapter.

``streamGenerateContent`` without ``alt=sse`` returns a JSON array whose
elements arrive as the model produces them. There is no line framing, so the
body is run through ``JsonFrameParser`` and each recovered object is
normalized by ``normalize_gemini_frame``.

Some models answer a streaming request with a single complete object. When
that happens before anything else was emitted, the text is replayed as
whitespace-delimited tokens so clients still see incremental output.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
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
from chatrelay.providers.frame_parser import JsonFrameParser
from chatrelay.providers.http_client import (
    create_http_client,
    open_stream,
    parse_json,
    raise_for_status,
    request_with_retries,
)

logger = get_logger(__name__)

FINISHED_REASONS = frozenset({"STOP", "MAX_TOKENS"})

GENERATION_CONFIG = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 8192,
}

_TOKEN_RE = re.compile(r"\S+\s*")


class GeminiFrameKind(str, Enum):
    COMPLETE = "complete"  # full text with finishReason STOP
    DELTA = "delta"  # incremental text, finish reason optional
    FINISH = "finish"  # finish reason only
    EMPTY = "empty"


@dataclass(frozen=True)
class GeminiFrame:
    kind: GeminiFrameKind
    text: str = ""
    finish_reason: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.finish_reason in FINISHED_REASONS


def _candidate_text(candidate: dict[str, Any]) -> str:
    content = candidate.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return "".join(
        part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)
    )


def normalize_gemini_frame(obj: Any) -> GeminiFrame:
    """Classify one decoded Gemini response object."""
    if not isinstance(obj, dict):
        return GeminiFrame(GeminiFrameKind.EMPTY)
    candidates = obj.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return GeminiFrame(GeminiFrameKind.EMPTY)

    candidate = candidates[0]
    text = _candidate_text(candidate)
    finish_reason = candidate.get("finishReason")

    if text and finish_reason == "STOP":
        return GeminiFrame(GeminiFrameKind.COMPLETE, text, finish_reason)
    if text:
        return GeminiFrame(GeminiFrameKind.DELTA, text, finish_reason)
    if finish_reason:
        return GeminiFrame(GeminiFrameKind.FINISH, finish_reason=finish_reason)
    return GeminiFrame(GeminiFrameKind.EMPTY)


def split_tokens(text: str) -> list[str]:
    """
    Split text into whitespace-delimited tokens whose concatenation is ``text``.

    Each token carries the whitespace that precedes it, so ``"Hi there"``
    becomes ``["Hi", " there"]``. Trailing whitespace stays on the last token.
    """
    stripped = text.lstrip()
    leading = text[: len(text) - len(stripped)]
    words = _TOKEN_RE.findall(stripped)
    if not words:
        return [text] if text else []
    # Move each word's trailing whitespace onto the following word.
    tokens: list[str] = []
    carry = leading
    for word in words:
        body = word.rstrip()
        tokens.append(carry + body)
        carry = word[len(body) :]
    tokens[-1] += carry
    return tokens


def to_gemini_request(messages: list[ChatMessage]) -> dict[str, Any]:
    """Build a generateContent body; system messages become systemInstruction."""
    system_parts = [{"text": m.content} for m in messages if m.role == "system"]
    contents = [
        {
            "role": "model" if m.role == "assistant" else "user",
            "parts": [{"text": m.content}],
        }
        for m in messages
        if m.role != "system"
    ]
    body: dict[str, Any] = {
        "contents": contents,
        "generationConfig": dict(GENERATION_CONFIG),
    }
    if system_parts:
        body["systemInstruction"] = {"parts": system_parts}
    return body


class GeminiProvider(BaseProvider):
    """Adapter for the Gemini generateContent API."""

    provider_type = ProviderType.GEMINI
    display_name = "Google Gemini"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: int = 120,
        max_retries: int = 1,
        simulated_token_delay: float = 0.02,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_retries = max_retries
        self.simulated_token_delay = simulated_token_delay
        self._client = create_http_client(
            base_url,
            timeout_seconds,
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def chat(self, messages: list[ChatMessage], model: str) -> ChatResponse:
        response = await request_with_retries(
            self._client,
            "POST",
            f"/models/{model}:generateContent",
            max_retries=self.max_retries,
            json=to_gemini_request(messages),
        )
        raise_for_status(response)
        data = parse_json(response)

        frame = normalize_gemini_frame(data)
        usage = data.get("usageMetadata") or {}
        return ChatResponse(
            content=frame.text,
            model=model,
            provider=self.provider_type,
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
            total_tokens=usage.get("totalTokenCount"),
        )

    async def _replay_tokens(self, text: str) -> AsyncIterator[StreamEvent]:
        for token in split_tokens(text):
            yield StreamEvent.text(delta=token)
            if self.simulated_token_delay > 0:
                await asyncio.sleep(self.simulated_token_delay)

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
                f"/models/{model}:streamGenerateContent",
                max_retries=self.max_retries,
                json=to_gemini_request(messages),
            )
        except AppError as exc:
            logger.warning(
                "Gemini stream request failed",
                data={"code": exc.code.value, "model": model},
            )
            yield StreamEvent.failed(exc.message)
            return

        parser = JsonFrameParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        emitted = False
        try:
            async for chunk in response.aiter_bytes():
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Gemini stream cancelled", data={"model": model})
                    return
                for raw in parser.feed(decoder.decode(chunk)):
                    try:
                        obj = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed stream object", data={"chunk": raw[:200]})
                        continue

                    frame = normalize_gemini_frame(obj)
                    if frame.kind is GeminiFrameKind.COMPLETE:
                        if emitted:
                            yield StreamEvent.text(delta=frame.text)
                        else:
                            async for event in self._replay_tokens(frame.text):
                                yield event
                        yield StreamEvent.done()
                        return
                    if frame.kind is GeminiFrameKind.DELTA:
                        emitted = True
                        yield StreamEvent.text(delta=frame.text)
                        if frame.is_finished:
                            yield StreamEvent.done()
                            return
                    elif frame.kind is GeminiFrameKind.FINISH and frame.is_finished:
                        yield StreamEvent.done()
                        return

            tail = decoder.decode(b"", final=True)
            if tail:
                parser.feed(tail)
            if parser.buffer:
                logger.warning(
                    "Gemini stream ended inside an object",
                    data={"pending": parser.buffer[:200]},
                )

            if emitted:
                yield StreamEvent.done()
            else:
                yield StreamEvent.failed("No content received from Gemini stream")
        except httpx.HTTPError as exc:
            logger.warning(
                "Gemini stream interrupted",
                data={"error": str(exc), "model": model},
            )
            yield StreamEvent.failed("Upstream stream interrupted")
        finally:
            await response.aclose()
