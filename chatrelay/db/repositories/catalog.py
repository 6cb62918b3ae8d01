"""
Model catalog lookups.

The catalog itself is maintained elsewhere; this module only reads it.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatrelay.db.models import Model, Provider


def get_model_by_id(db: Session, model_id: str) -> Model | None:
    """Return a catalog model by primary key."""
    return db.get(Model, model_id)


def get_model_by_identifier(db: Session, identifier: str) -> Model | None:
    """Return a catalog model by its upstream identifier."""
    stmt = select(Model).where(Model.model_identifier == identifier)
    return db.execute(stmt).scalars().first()


def get_first_active_model(db: Session) -> Model | None:
    """Return the oldest active model whose provider is also active."""
    stmt = (
        select(Model)
        .join(Model.provider)
        .where(Model.is_active.is_(True), Provider.is_active.is_(True))
        .order_by(Model.created_at.asc())
    )
    return db.execute(stmt).scalars().first()


def list_active_models(db: Session) -> list[Model]:
    """List active models ordered by provider name, then model name."""
    stmt = (
        select(Model)
        .join(Model.provider)
        .where(Model.is_active.is_(True), Provider.is_active.is_(True))
        .order_by(Provider.name.asc(), Model.model_name.asc())
    )
    return list(db.execute(stmt).scalars().all())


def resolve_model(
    db: Session,
    *,
    requested_model_id: str | None,
    preferred_model_id: str | None,
    default_identifier: str | None,
) -> Model | None:
    """
    Resolve the model for a chat request.

    Order: explicitly requested model, the user's preferred model, the
    configured default identifier, then any active model.
    """
    if requested_model_id:
        model = get_model_by_id(db, requested_model_id)
        if model:
            return model
    if preferred_model_id:
        model = get_model_by_id(db, preferred_model_id)
        if model:
            return model
    if default_identifier:
        model = get_model_by_identifier(db, default_identifier)
        if model:
            return model
    return get_first_active_model(db)
