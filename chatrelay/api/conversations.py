"""Read-only conversation endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatrelay.auth import CurrentUser
from chatrelay.core import NotFoundError
from chatrelay.db import get_db
from chatrelay.db.models import Conversation, Message
from chatrelay.db.repositories import get_user_conversation_with_messages

router = APIRouter(tags=["conversations"])


def _message_to_response(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "created_at": message.created_at.isoformat(),
        "input_tokens": message.input_tokens,
        "output_tokens": message.output_tokens,
        "tokens": message.tokens,
        "cost": message.cost,
        "model_id": message.model_id,
    }


def _conversation_to_response(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
        "messages": [_message_to_response(msg) for msg in conversation.messages],
    }


@router.get("/conversations/{conversation_id}")
def get_conversation_route(
    conversation_id: str,
    user: CurrentUser,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    conversation = get_user_conversation_with_messages(db, user.id, conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    return {"conversation": _conversation_to_response(conversation)}
