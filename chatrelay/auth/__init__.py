"""Caller identity resolution."""

from chatrelay.auth.dependencies import (
    CurrentUser,
    get_app_settings,
    get_current_user,
    get_user_id_header,
    require_user,
)

__all__ = [
    "CurrentUser",
    "get_app_settings",
    "get_current_user",
    "get_user_id_header",
    "require_user",
]
