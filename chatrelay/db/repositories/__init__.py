"""Database repositories for data access."""

from chatrelay.db.repositories.catalog import (
    get_first_active_model,
    get_model_by_id,
    get_model_by_identifier,
    list_active_models,
    resolve_model,
)
from chatrelay.db.repositories.conversation import (
    DEFAULT_TITLE,
    create_conversation,
    create_message,
    get_recent_messages,
    get_user_conversation,
    get_user_conversation_with_messages,
    persist_exchange,
    touch_conversation,
    update_conversation_title,
)
from chatrelay.db.repositories.usage import (
    record_usage,
    sum_usage_since,
    summarize_usage,
)
from chatrelay.db.repositories.user import (
    get_user_by_id,
)

__all__ = [
    # User
    "get_user_by_id",
    # Catalog
    "get_first_active_model",
    "get_model_by_id",
    "get_model_by_identifier",
    "list_active_models",
    "resolve_model",
    # Conversations
    "DEFAULT_TITLE",
    "create_conversation",
    "create_message",
    "get_recent_messages",
    "get_user_conversation",
    "get_user_conversation_with_messages",
    "persist_exchange",
    "touch_conversation",
    "update_conversation_title",
    # Usage
    "record_usage",
    "sum_usage_since",
    "summarize_usage",
]
