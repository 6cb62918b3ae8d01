"""Chat orchestration: SSE relay, verification, persistence, and cancellation."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.config import Settings, get_settings
from chatrelay.core import (
    AppError,
    ModelUnavailableError,
    NotFoundError,
    PersistenceError,
    ProviderBadResponseError,
    UpstreamStreamError,
    ValidationError,
    get_logger,
    stream_id_ctx,
)
from chatrelay.core.metrics import metrics
from chatrelay.core.time import utcnow
from chatrelay.db.models import User
from chatrelay.db.repositories import (
    create_conversation,
    create_message,
    get_recent_messages,
    get_user_conversation,
    persist_exchange,
    resolve_model,
    update_conversation_title,
)
from chatrelay.providers import ChatMessage, ProviderManager, StreamEvent, StreamEventType
from chatrelay.services.usage import UsageResult, compute_usage

logger = get_logger(__name__)

STREAM_ENDPOINT = "/api/chat/stream"
CHAT_ENDPOINT = "/api/chat"

TITLE_MAX_LENGTH = 50
TITLE_SYSTEM_PROMPT = (
    "Generate a concise, descriptive title (max 50 characters) for a conversation "
    "that starts with the following user message. Return only the title, no quotes "
    "or extra text."
)

_EXHAUSTED = object()


class StreamState(str, Enum):
    VALIDATING = "validating"
    RESOLVING_CONVERSATION = "resolving_conversation"
    RESOLVING_MODEL = "resolving_model"
    STREAMING = "streaming"
    VERIFYING = "verifying"
    PERSISTING = "persisting"
    DONE = "done"
    ERROR_ABORTED = "error_aborted"


@dataclass
class PreparedChat:
    """Everything the relay needs once request-scoped DB work is finished."""

    user_id: str
    conversation_id: str
    is_new_conversation: bool
    user_message: str
    messages: list[ChatMessage]
    model_id: str
    model_identifier: str
    model_name: str
    provider_name: str
    provider_display_name: str
    input_price_per_1k: Decimal | None
    output_price_per_1k: Decimal | None


@dataclass
class ActiveStream:
    """Metadata for an in-flight chat stream."""

    stream_id: str
    user_id: str
    conversation_id: str
    started_at: datetime
    cancel_event: asyncio.Event


class ActiveStreamManager:
    """Tracks active SSE streams so they can be cancelled."""

    def __init__(self) -> None:
        self._streams: dict[str, ActiveStream] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        stream_id: str,
        user_id: str,
        conversation_id: str,
        cancel_event: asyncio.Event,
    ) -> None:
        async with self._lock:
            self._streams[stream_id] = ActiveStream(
                stream_id=stream_id,
                user_id=user_id,
                conversation_id=conversation_id,
                started_at=utcnow(),
                cancel_event=cancel_event,
            )
            metrics.set_gauge("active_streams", float(len(self._streams)))

    async def unregister(self, stream_id: str) -> ActiveStream | None:
        async with self._lock:
            stream = self._streams.pop(stream_id, None)
            metrics.set_gauge("active_streams", float(len(self._streams)))
        return stream

    async def cancel(self, stream_id: str, user_id: str) -> bool:
        """Signal cancellation for a running stream if it belongs to the requester."""
        async with self._lock:
            stream = self._streams.get(stream_id)
        if not stream or stream.user_id != user_id:
            return False
        stream.cancel_event.set()
        return True

    async def cancel_all(self) -> int:
        async with self._lock:
            streams = list(self._streams.values())
        for stream in streams:
            stream.cancel_event.set()
        return len(streams)

    def __len__(self) -> int:
        return len(self._streams)


def clean_title(raw: str) -> str:
    """Strip surrounding quotes and whitespace, cap at 50 characters."""
    title = raw.strip().strip("\"'`").strip()
    return title[:TITLE_MAX_LENGTH].rstrip()


def format_sse(payload: dict[str, Any]) -> str:
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return f"data: {data}\n\n"


def format_sse_comment(comment: str = "ping") -> str:
    return f": {comment}\n\n"


SSE_DONE = "data: [DONE]\n\n"


async def _next_event(events: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class ChatService:
    """
    Runs one chat exchange end to end.

    ``prepare`` does the request-scoped work (validation, conversation and
    model resolution, saving the user's message) and raises structured errors
    before any response bytes are sent. ``stream_chat`` then relays the
    upstream stream as SSE and, only after a successful ``done`` with
    non-empty content, persists the assistant reply in one transaction on its
    own session.
    """

    def __init__(
        self,
        providers: ProviderManager,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
    ):
        self.providers = providers
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.streams = ActiveStreamManager()
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Pre-stream setup
    # ------------------------------------------------------------------

    def prepare(
        self,
        db: Session,
        *,
        user: User,
        message: str | None,
        conversation_id: str | None = None,
        model_id: str | None = None,
    ) -> PreparedChat:
        """
        Validate the request, resolve conversation and model, save the user message.

        Raises:
            ValidationError: Missing or blank message
            NotFoundError: Conversation does not exist or is not owned by the user
            ModelUnavailableError: No model could be resolved
        """
        state = StreamState.VALIDATING
        if message is None or not message.strip():
            raise ValidationError("Message is required")

        state = StreamState.RESOLVING_CONVERSATION
        conversation = None
        history = []
        if conversation_id:
            conversation = get_user_conversation(db, user.id, conversation_id)
            if not conversation:
                raise NotFoundError("Conversation not found")
            history = get_recent_messages(
                db, conversation.id, limit=self.settings.context_message_limit
            )

        state = StreamState.RESOLVING_MODEL
        model = resolve_model(
            db,
            requested_model_id=model_id,
            preferred_model_id=user.preferred_model_id,
            default_identifier=self.settings.default_model_identifier,
        )
        if not model:
            logger.error("No model could be resolved", data={"state": state.value})
            raise ModelUnavailableError()

        is_new = conversation is None
        if conversation is None:
            conversation = create_conversation(db, user.id)

        create_message(db, conversation.id, "user", message)

        messages = [ChatMessage(role=m.role, content=m.content) for m in history]
        messages.append(ChatMessage(role="user", content=message))

        logger.info(
            "Chat prepared",
            data={
                "conversation_id": conversation.id,
                "new_conversation": is_new,
                "model": model.model_identifier,
                "provider": model.provider.name,
                "context_messages": len(history),
            },
        )
        return PreparedChat(
            user_id=user.id,
            conversation_id=conversation.id,
            is_new_conversation=is_new,
            user_message=message,
            messages=messages,
            model_id=model.id,
            model_identifier=model.model_identifier,
            model_name=model.model_name,
            provider_name=model.provider.name,
            provider_display_name=model.provider.display_name,
            input_price_per_1k=model.input_price_per_1k,
            output_price_per_1k=model.output_price_per_1k,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _relay(
        self,
        events: AsyncIterator[StreamEvent],
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[StreamEvent | None]:
        """
        Yield upstream events, or ``None`` after each idle ping interval.

        Returns as soon as ``cancel_event`` is set, cancelling the pending
        upstream read and closing the upstream stream.
        """
        ping_interval = float(self.settings.sse_ping_interval_seconds or 0)
        timeout = ping_interval if ping_interval > 0 else None
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        pending: asyncio.Future | None = None
        try:
            while not cancel_event.is_set():
                if pending is None:
                    pending = asyncio.ensure_future(_next_event(events))
                done, _ = await asyncio.wait(
                    {pending, cancel_wait},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if pending in done:
                    finished, pending = pending, None
                    event = finished.result()
                    if event is _EXHAUSTED:
                        return
                    yield event
                elif cancel_wait in done:
                    return
                else:
                    yield None
        finally:
            cancel_wait.cancel()
            if pending is not None:
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)
            await events.aclose()

    async def stream_chat(
        self,
        chat: PreparedChat,
        *,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        stream_id: str | None = None,
    ) -> AsyncIterator[str]:
        """
        Relay the upstream stream as SSE frames.

        Frames: ``start``, ``content``*, then either ``complete`` + ``done``
        or a single ``error``, always followed by the ``[DONE]`` sentinel.
        """
        stream_id = stream_id or str(uuid.uuid4())
        cancel_event = asyncio.Event()
        await self.streams.register(stream_id, chat.user_id, chat.conversation_id, cancel_event)
        stream_id_ctx.set(stream_id)
        started = time.perf_counter()

        state = StreamState.STREAMING
        accumulated = ""
        terminal: StreamEvent | None = None
        disconnected = False
        relay = self._relay(
            self.providers.chat_stream(
                chat.messages,
                chat.provider_name,
                chat.model_identifier,
                cancel_event=cancel_event,
            ),
            cancel_event,
        )
        try:
            yield format_sse(
                {
                    "type": "start",
                    "stream_id": stream_id,
                    "conversation_id": chat.conversation_id,
                    "model": chat.model_name,
                    "provider": chat.provider_display_name,
                }
            )

            async for event in relay:
                if event is None:
                    metrics.increment("sse_pings_sent")
                    yield format_sse_comment()
                    continue
                if event.is_terminal:
                    terminal = event
                    break
                if event.type is not StreamEventType.CONTENT:
                    continue

                if event.delta:
                    accumulated += event.delta
                elif event.content is not None:
                    accumulated = event.content
                else:
                    continue
                yield format_sse(
                    {"type": "content", "delta": event.delta or "", "content": accumulated}
                )

                if is_disconnected is not None and await is_disconnected():
                    disconnected = True
                    logger.info(
                        "Client disconnected; stopping relay",
                        data={"content_length": len(accumulated)},
                    )
                    break

            if cancel_event.is_set():
                state = StreamState.ERROR_ABORTED
                metrics.increment("streams_cancelled_total")
                logger.info("Chat stream cancelled", data={"content_length": len(accumulated)})
                yield format_sse({"type": "error", "error": "Stream cancelled"})
                yield SSE_DONE
                return

            state = StreamState.VERIFYING
            failure = self._verify(terminal, accumulated, disconnected)
            if failure:
                raise UpstreamStreamError(failure, details={"content_length": len(accumulated)})

            usage = compute_usage(
                chat.messages,
                accumulated,
                chat.input_price_per_1k,
                chat.output_price_per_1k,
                model_identifier=chat.model_identifier,
            )
            yield format_sse(
                {"type": "complete", "total_tokens": usage.total_tokens, "cost": usage.cost}
            )

            state = StreamState.PERSISTING
            self._persist(chat, accumulated, usage, STREAM_ENDPOINT)

            if chat.is_new_conversation:
                self.schedule_title(chat)

            state = StreamState.DONE
            metrics.increment("streams_completed_total")
            logger.info(
                "Chat stream completed",
                data={
                    "content_length": len(accumulated),
                    "total_tokens": usage.total_tokens,
                    "cost": usage.cost,
                },
            )
            yield format_sse(
                {
                    "type": "done",
                    "conversation_id": chat.conversation_id,
                    "usage": self._usage_payload(chat, usage),
                }
            )
            yield SSE_DONE
        except AppError as exc:
            state = StreamState.ERROR_ABORTED
            metrics.increment("streams_failed_total")
            logger.warning(
                "Chat stream aborted",
                data={"code": exc.code.value, "error": exc.message, "details": exc.details},
            )
            yield format_sse({"type": "error", "error": exc.message, "code": exc.code.value})
            yield SSE_DONE
        except Exception:
            state = StreamState.ERROR_ABORTED
            metrics.increment("streams_failed_total")
            logger.exception("Unexpected error during chat stream")
            yield format_sse({"type": "error", "error": "An unexpected error occurred"})
            yield SSE_DONE
        finally:
            await relay.aclose()
            await self.streams.unregister(stream_id)
            metrics.observe("stream_duration_seconds", time.perf_counter() - started)
            logger.debug("Stream finished", data={"state": state.value})
            stream_id_ctx.set(None)

    @staticmethod
    def _verify(terminal: StreamEvent | None, content: str, disconnected: bool) -> str | None:
        """Return a failure message, or ``None`` when the stream may be persisted."""
        if terminal is None:
            if disconnected:
                return "Client disconnected before the stream completed"
            return "Stream ended without completing"
        if terminal.type is StreamEventType.ERROR:
            return terminal.error or "Unknown streaming error"
        if not content.strip():
            return "Stream completed without content"
        return None

    def _persist(self, chat: PreparedChat, content: str, usage: UsageResult, endpoint: str) -> str:
        """
        Write the exchange atomically on a fresh session.

        Raises:
            PersistenceError: If the transaction fails
        """
        try:
            with self.session_factory() as db, db.begin():
                message = persist_exchange(
                    db,
                    user_id=chat.user_id,
                    conversation_id=chat.conversation_id,
                    content=content,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens,
                    cost=usage.cost,
                    model_id=chat.model_id,
                    endpoint=endpoint,
                )
                return message.id
        except SQLAlchemyError as exc:
            logger.exception(
                "Failed to persist chat exchange",
                data={"conversation_id": chat.conversation_id, "endpoint": endpoint},
            )
            raise PersistenceError(details={"reason": type(exc).__name__}) from exc

    @staticmethod
    def _usage_payload(chat: PreparedChat, usage: UsageResult) -> dict[str, Any]:
        return {
            **usage.to_dict(),
            "model": chat.model_name,
            "provider": chat.provider_display_name,
        }

    async def cancel_stream(self, stream_id: str, user_id: str) -> bool:
        """Cancel an active stream if it belongs to the requesting user."""
        cancelled = await self.streams.cancel(stream_id, user_id)
        logger.info(
            "Stream cancel requested",
            data={"stream_id": stream_id, "cancelled": cancelled},
        )
        return cancelled

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def chat_once(self, chat: PreparedChat) -> dict[str, Any]:
        """Complete one exchange without streaming and return the saved reply."""
        response = await self.providers.chat(
            chat.messages, chat.provider_name, chat.model_identifier
        )
        if not response.content.strip():
            raise ProviderBadResponseError("Provider returned an empty response")

        usage = compute_usage(
            chat.messages,
            response.content,
            chat.input_price_per_1k,
            chat.output_price_per_1k,
            reported_input_tokens=response.input_tokens,
            reported_output_tokens=response.output_tokens,
            model_identifier=chat.model_identifier,
        )
        message_id = self._persist(chat, response.content, usage, CHAT_ENDPOINT)

        if chat.is_new_conversation:
            self.schedule_title(chat)

        return {
            "conversation_id": chat.conversation_id,
            "message": {
                "id": message_id,
                "role": "assistant",
                "content": response.content,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "tokens": usage.total_tokens,
                "cost": usage.cost,
                "model_id": chat.model_id,
            },
            "usage": self._usage_payload(chat, usage),
        }

    # ------------------------------------------------------------------
    # Title generation
    # ------------------------------------------------------------------

    def schedule_title(self, chat: PreparedChat) -> asyncio.Task | None:
        """Start title generation in the background; never awaited by the response."""
        if not self.settings.title_generation_enabled:
            return None
        task = asyncio.create_task(
            self._generate_title(
                chat.conversation_id,
                chat.user_message,
                chat.provider_name,
                chat.model_identifier,
            ),
            name=f"title-{chat.conversation_id}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _generate_title(
        self,
        conversation_id: str,
        user_message: str,
        provider_name: str,
        model_identifier: str,
    ) -> None:
        try:
            response = await self.providers.chat(
                [
                    ChatMessage(role="system", content=TITLE_SYSTEM_PROMPT),
                    ChatMessage(role="user", content=user_message),
                ],
                provider_name,
                model_identifier,
            )
            title = clean_title(response.content)
            if not title:
                logger.info("Title generation returned nothing", data={"conversation_id": conversation_id})
                return
            with self.session_factory() as db:
                update_conversation_title(db, conversation_id, title)
            logger.info("Conversation titled", data={"conversation_id": conversation_id})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            metrics.increment("title_generation_failures_total")
            logger.warning(
                "Title generation failed",
                data={"conversation_id": conversation_id, "error": str(exc)},
            )

    @property
    def background_tasks(self) -> set[asyncio.Task]:
        return set(self._background)

    async def shutdown(self) -> None:
        """Cancel active streams and pending background work."""
        cancelled = await self.streams.cancel_all()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            "Chat service shut down",
            data={"streams_cancelled": cancelled, "tasks_cancelled": len(tasks)},
        )
