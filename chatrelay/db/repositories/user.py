"""
User repository for database operations.
"""

from sqlalchemy.orm import Session

from chatrelay.db.models import User


def get_user_by_id(db: Session, user_id: str) -> User | None:
    """Get user by ID."""
    return db.get(User, user_id)

