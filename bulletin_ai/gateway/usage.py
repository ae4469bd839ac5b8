"""Session-wide token and cost accounting."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from bulletin_ai.gateway.catalog import COSTS_PER_MILLION_TOKENS
from bulletin_ai.gateway.types import ModelPricing

logger = logging.getLogger(__name__)


def estimate_cost_usd(
    model_id: str,
    prompt_tokens: int,
    completion_tokens: int,
    pricing: dict[str, ModelPricing] | None = None,
) -> float | None:
    """USD cost of one call, or None when the model has no known price."""
    table = COSTS_PER_MILLION_TOKENS if pricing is None else pricing
    price = table.get(model_id)
    if price is None:
        return None
    return (prompt_tokens / 1_000_000) * price.input + (completion_tokens / 1_000_000) * price.output


@dataclass
class SessionUsage:
    """Accumulates tokens and estimated cost across every successful call."""

    pricing: dict[str, ModelPricing] = field(default_factory=lambda: dict(COSTS_PER_MILLION_TOKENS))
    session_tokens: int = 0
    session_cost_estimate: float = 0.0
    calls: int = 0
    tokens_by_model: dict[str, int] = field(default_factory=dict)

    def record(self, model_id: str, prompt_tokens: int, completion_tokens: int) -> float | None:
        total = prompt_tokens + completion_tokens
        self.session_tokens += total
        self.calls += 1
        self.tokens_by_model[model_id] = self.tokens_by_model.get(model_id, 0) + total

        cost = estimate_cost_usd(model_id, prompt_tokens, completion_tokens, self.pricing)
        if cost is not None:
            self.session_cost_estimate += cost
        else:
            logger.debug("No pricing for %s, cost not counted", model_id)
        return cost

    def reset(self) -> None:
        self.session_tokens = 0
        self.session_cost_estimate = 0.0
        self.calls = 0
        self.tokens_by_model.clear()

    def get_stats(self) -> dict:
        return {
            "session_tokens": self.session_tokens,
            "session_cost_estimate": round(self.session_cost_estimate, 6),
            "calls": self.calls,
            "tokens_by_model": dict(self.tokens_by_model),
        }
