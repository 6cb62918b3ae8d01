"""
FastAPI dependencies for caller identity.

Authentication happens upstream of this service (gateway or session layer).
The authenticated user id arrives in a trusted header, named by
``AUTH_USER_HEADER``, and is resolved to a ``User`` row here.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from chatrelay.config import Settings, get_settings
from chatrelay.core import UnauthorizedError, user_id_ctx
from chatrelay.db import get_db
from chatrelay.db.models import User
from chatrelay.db.repositories import get_user_by_id


def get_app_settings(request: Request) -> Settings:
    """Settings bound to the running app, falling back to the process settings."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_user_id_header(request: Request) -> str | None:
    """
    Extract the authenticated user id from the trusted identity header.

    Args:
        request: FastAPI request object.

    Returns:
        The user id if present and non-blank, None otherwise.
    """
    settings = get_app_settings(request)
    value = request.headers.get(settings.auth_user_header)
    if value is None or not value.strip():
        return None
    return value.strip()


async def get_current_user(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
) -> User | None:
    """
    Resolve the caller to a User row.

    Does NOT enforce authentication - returns None if the header is missing
    or names an unknown user. Use require_user() to enforce it.
    """
    user_id = get_user_id_header(request)
    if not user_id:
        return None
    user = get_user_by_id(db, user_id)
    if user:
        user_id_ctx.set(user.id)
    return user


async def require_user(
    user: Annotated[User | None, Depends(get_current_user)],
) -> User:
    """
    Require an identified caller.

    Raises:
        UnauthorizedError: If no known user is attached to the request
    """
    if user is None:
        raise UnauthorizedError()
    return user


CurrentUser = Annotated[User, Depends(require_user)]
