"""Per-user usage summary endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatrelay.auth import CurrentUser
from chatrelay.db import get_db
from chatrelay.db.repositories import summarize_usage

router = APIRouter(tags=["usage"])


@router.get("/user/usage")
def get_usage_route(user: CurrentUser, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Tokens and cost for today and this month (UTC), with the user's limits."""
    summary = summarize_usage(db, user.id)
    return {
        **summary,
        "daily_limit": user.daily_token_limit,
        "monthly_limit": user.monthly_token_limit,
    }
