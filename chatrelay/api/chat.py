"""Chat endpoints: streaming, non-streaming, and stream cancellation."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_chat_service, get_rate_limiter
from chatrelay.auth import CurrentUser, get_app_settings
from chatrelay.core import NotFoundError
from chatrelay.core.logging import request_id_ctx
from chatrelay.db import get_db
from chatrelay.services.chat_service import ChatService
from chatrelay.services.rate_limiter import RateLimiter

router = APIRouter(tags=["chat"])


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    conversation_id: str | None = Field(None, alias="conversationId")
    message: str = Field(..., min_length=1)
    model_id: str | None = Field(None, alias="modelId")


class ChatCancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(..., alias="streamId")


async def enforce_chat_rate_limit(
    request: Request,
    user: CurrentUser,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Count one chat request against the caller's per-minute budget."""
    settings = get_app_settings(request)
    await limiter.enforce(
        user.id,
        settings.rate_limit_requests_per_minute,
        settings.rate_limit_window_ms,
    )


def _stream_headers() -> dict[str, str]:
    headers = {
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    request_id = request_id_ctx.get()
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


@router.post("/chat/stream", dependencies=[Depends(enforce_chat_rate_limit)])
async def chat_stream_route(
    request: Request,
    user: CurrentUser,
    body: ChatRequest = Body(...),
    chat_service: ChatService = Depends(get_chat_service),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    prepared = chat_service.prepare(
        db,
        user=user,
        message=body.message,
        conversation_id=body.conversation_id,
        model_id=body.model_id,
    )
    stream = chat_service.stream_chat(prepared, is_disconnected=request.is_disconnected)
    return StreamingResponse(stream, media_type="text/event-stream", headers=_stream_headers())


@router.post("/chat", dependencies=[Depends(enforce_chat_rate_limit)])
async def chat_route(
    user: CurrentUser,
    body: ChatRequest = Body(...),
    chat_service: ChatService = Depends(get_chat_service),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    prepared = chat_service.prepare(
        db,
        user=user,
        message=body.message,
        conversation_id=body.conversation_id,
        model_id=body.model_id,
    )
    return await chat_service.chat_once(prepared)


@router.post("/chat/cancel")
async def chat_cancel_route(
    user: CurrentUser,
    body: ChatCancelRequest = Body(...),
    chat_service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    cancelled = await chat_service.cancel_stream(body.stream_id, user.id)
    if not cancelled:
        raise NotFoundError("Stream not found")
    return {"status": "cancelled", "stream_id": body.stream_id}
