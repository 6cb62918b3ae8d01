"""Token estimation and cost calculation."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from decimal import Decimal

from chatrelay.core import get_logger
from chatrelay.providers.base import ChatMessage

logger = get_logger(__name__)


@dataclass(frozen=True)
class UsageResult:
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def prompt_text(messages: list[ChatMessage]) -> str:
    return " ".join(m.content for m in messages)


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    input_price_per_1k: Decimal | float | None,
    output_price_per_1k: Decimal | float | None,
    model_identifier: str | None = None,
) -> float:
    """Price a call from per-1000-token unit prices. A missing price counts as 0."""
    if input_price_per_1k is None or output_price_per_1k is None:
        logger.warning(
            "Model has no unit price; pricing missing side at 0",
            data={
                "model": model_identifier,
                "input_price_missing": input_price_per_1k is None,
                "output_price_missing": output_price_per_1k is None,
            },
        )
    input_price = float(input_price_per_1k or 0)
    output_price = float(output_price_per_1k or 0)
    return (input_tokens / 1000) * input_price + (output_tokens / 1000) * output_price


def compute_usage(
    messages: list[ChatMessage],
    response_text: str,
    input_price_per_1k: Decimal | float | None,
    output_price_per_1k: Decimal | float | None,
    *,
    reported_input_tokens: int | None = None,
    reported_output_tokens: int | None = None,
    model_identifier: str | None = None,
) -> UsageResult:
    """
    Token counts and cost for one exchange.

    Provider-reported counts win when present and non-zero; otherwise both
    sides are estimated from text length.
    """
    input_tokens = reported_input_tokens or estimate_tokens(prompt_text(messages))
    output_tokens = reported_output_tokens or estimate_tokens(response_text)
    cost = calculate_cost(
        input_tokens,
        output_tokens,
        input_price_per_1k,
        output_price_per_1k,
        model_identifier,
    )
    return UsageResult(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        cost=cost,
    )
