"""Repository helpers for conversations and messages."""

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from chatrelay.core.time import utcnow
from chatrelay.db.models import Conversation, Message
from chatrelay.db.repositories.usage import record_usage

DEFAULT_TITLE = "New Conversation"


def create_conversation(
    db: Session,
    user_id: str,
    title: str | None = None,
) -> Conversation:
    """Create a new conversation for the given user."""
    conversation = Conversation(
        user_id=user_id,
        title=title.strip() if title and title.strip() else DEFAULT_TITLE,
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def get_user_conversation(
    db: Session, user_id: str, conversation_id: str
) -> Conversation | None:
    """Fetch conversation owned by user."""
    stmt = select(Conversation).where(
        Conversation.id == conversation_id,
        Conversation.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def get_user_conversation_with_messages(
    db: Session, user_id: str, conversation_id: str
) -> Conversation | None:
    """Fetch an owned conversation with its full message history eagerly loaded."""
    stmt = (
        select(Conversation)
        .options(selectinload(Conversation.messages))
        .where(
            Conversation.id == conversation_id,
            Conversation.user_id == user_id,
        )
    )
    return db.execute(stmt).scalar_one_or_none()


def get_recent_messages(
    db: Session, conversation_id: str, limit: int = 20
) -> list[Message]:
    """Return the ``limit`` most recent messages, oldest first."""
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    messages = list(db.execute(stmt).scalars().all())
    messages.reverse()
    return messages



def create_message(
    db: Session,
    conversation_id: str,
    role: str,
    content: str,
    *,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
    tokens: int | None = None,
    cost: float | None = None,
    model_id: str | None = None,
    commit: bool = True,
) -> Message:
    """Insert a chat message.

    With ``commit=False`` the row is only flushed so the caller can group it
    with other writes in a single transaction.
    """
    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        tokens=tokens,
        cost=cost,
        model_id=model_id,
    )
    db.add(message)
    if commit:
        db.commit()
        db.refresh(message)
    else:
        db.flush()
    return message


def touch_conversation(db: Session, conversation_id: str) -> None:
    """Bump the conversation's last-activity timestamp (flush only)."""
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=utcnow())
    )
    db.flush()


def update_conversation_title(
    db: Session, conversation_id: str, title: str
) -> Conversation | None:
    """Replace a conversation title; blank titles are ignored."""
    conversation = db.get(Conversation, conversation_id)
    if not conversation:
        return None
    conversation.title = title.strip() if title.strip() else conversation.title
    db.commit()
    db.refresh(conversation)
    return conversation


def persist_exchange(
    db: Session,
    *,
    user_id: str,
    conversation_id: str,
    content: str,
    input_tokens: int,
    output_tokens: int,
    total_tokens: int,
    cost: float,
    model_id: str | None,
    endpoint: str,
) -> Message:
    """
    Write the assistant reply, its usage ledger row, and the activity bump.

    Only flushes. Run inside ``with db.begin():`` so the three writes commit
    or roll back together.
    """
    message = create_message(
        db,
        conversation_id,
        "assistant",
        content,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        tokens=total_tokens,
        cost=cost,
        model_id=model_id,
        commit=False,
    )
    record_usage(
        db,
        user_id,
        model_id=model_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        cost=cost,
        endpoint=endpoint,
    )
    touch_conversation(db, conversation_id)
    return message
