"""Read-only model catalog endpoint."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatrelay.db import get_db
from chatrelay.db.models import Model
from chatrelay.db.repositories import list_active_models

router = APIRouter(tags=["models"])


def _price(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _model_to_response(model: Model) -> dict[str, Any]:
    return {
        "id": model.id,
        "model_name": model.model_name,
        "model_identifier": model.model_identifier,
        "input_price_per_1k": _price(model.input_price_per_1k),
        "output_price_per_1k": _price(model.output_price_per_1k),
        "context_length": model.context_length,
        "provider": {
            "id": model.provider.id,
            "name": model.provider.name,
            "display_name": model.provider.display_name,
        },
    }


@router.get("/models")
def list_models_route(db: Session = Depends(get_db)) -> dict[str, Any]:
    """Active models whose provider is active, grouped by provider name."""
    return {"models": [_model_to_response(model) for model in list_active_models(db)]}
