"""Database models, engine, and session management."""

from chatrelay.db.base import Base, TimestampMixin
from chatrelay.db.engine import dispose_engine, get_engine, verify_database_connection
from chatrelay.db.models import (
    ApiUsage,
    Conversation,
    Message,
    Model,
    Provider,
    User,
)
from chatrelay.db.session import get_db, get_session_factory, reset_session_factory

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Engine
    "get_engine",
    "verify_database_connection",
    "dispose_engine",
    # Session
    "get_db",
    "get_session_factory",
    "reset_session_factory",
    # Models
    "ApiUsage",
    "Conversation",
    "Message",
    "Model",
    "Provider",
    "User",
]
