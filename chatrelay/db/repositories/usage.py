"""
Usage ledger repository: per-call billing rows and aggregate summaries.
"""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chatrelay.core.time import utcnow
from chatrelay.db.models import ApiUsage


def record_usage(
    db: Session,
    user_id: str,
    *,
    model_id: str | None,
    input_tokens: int,
    output_tokens: int,
    total_tokens: int,
    cost: float,
    endpoint: str,
) -> ApiUsage:
    """Append a usage ledger row (flush only; caller commits)."""
    entry = ApiUsage(
        user_id=user_id,
        model_id=model_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        cost=cost,
        endpoint=endpoint,
    )
    db.add(entry)
    db.flush()
    return entry


def sum_usage_since(db: Session, user_id: str, since: datetime) -> tuple[int, float]:
    """Return (total_tokens, total_cost) recorded for the user since ``since``."""
    stmt = select(
        func.coalesce(func.sum(ApiUsage.total_tokens), 0),
        func.coalesce(func.sum(ApiUsage.cost), 0.0),
    ).where(ApiUsage.user_id == user_id, ApiUsage.created_at >= since)
    tokens, cost = db.execute(stmt).one()
    return int(tokens or 0), float(cost or 0.0)


def summarize_usage(db: Session, user_id: str, now: datetime | None = None) -> dict[str, float]:
    """Aggregate today's and this month's usage (UTC calendar boundaries)."""
    now = now or utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)
    month_tokens, month_cost = sum_usage_since(db, user_id, start_of_month)
    day_tokens, day_cost = sum_usage_since(db, user_id, start_of_day)
    return {
        "total_tokens_this_month": month_tokens,
        "total_cost_this_month": month_cost,
        "total_tokens_today": day_tokens,
        "total_cost_today": day_cost,
    }