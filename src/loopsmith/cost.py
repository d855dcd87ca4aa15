"""Token and cost accounting for agent rounds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_million: float
    output_per_million: float


MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-3-opus": ModelPricing(15.0, 75.0),
    "claude-3-sonnet": ModelPricing(3.0, 15.0),
    "claude-3-haiku": ModelPricing(0.25, 1.25),
    "claude-opus": ModelPricing(15.0, 75.0),
    "claude-sonnet": ModelPricing(3.0, 15.0),
    "claude-haiku": ModelPricing(0.8, 4.0),
    "gpt-4": ModelPricing(30.0, 60.0),
    "gpt-4-turbo": ModelPricing(10.0, 30.0),
    "gpt-4o": ModelPricing(2.5, 10.0),
}
DEFAULT_PRICING = ModelPricing(3.0, 15.0)


def pricing_for(model: str | None) -> ModelPricing:
    """Return the pricing row whose key is the longest prefix of *model*."""
    name = (model or "").strip().lower()
    best = ""
    for key in MODEL_PRICING:
        if name.startswith(key) and len(key) > len(best):
            best = key
    return MODEL_PRICING[best] if best else DEFAULT_PRICING


class CostTracker:
    """Running token/cost total with an optional ceiling.

    Parameters
    ----------
    model:
        Model name used to select a pricing row.
    max_cost:
        Ceiling in USD; ``0`` disables the ceiling.
    """

    def __init__(self, model: str | None = None, max_cost: float = 0.0) -> None:
        self.pricing = pricing_for(model)
        self.model = model
        self.max_cost = max(0.0, float(max_cost or 0.0))
        self.input_tokens = 0
        self.output_tokens = 0
        self.total_cost = 0.0
        self.iterations: list[float] = []

    def record_iteration(self, input_tokens: int, output_tokens: int) -> float:
        """Add one round's usage and return its cost in USD."""
        input_tokens = max(0, int(input_tokens))
        output_tokens = max(0, int(output_tokens))
        cost = (
            input_tokens * self.pricing.input_per_million
            + output_tokens * self.pricing.output_per_million
        ) / 1_000_000
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_cost += cost
        self.iterations.append(cost)
        logger.debug("Round cost $%.4f (total $%.4f)", cost, self.total_cost)
        return cost

    def is_over_budget(self) -> bool:
        return self.max_cost > 0 and self.total_cost >= self.max_cost

    def stats(self) -> dict[str, Any]:
        count = len(self.iterations)
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.input_tokens + self.output_tokens,
            "total_cost": round(self.total_cost, 6),
            "average_cost_per_iteration": round(self.total_cost / count, 6) if count else 0.0,
            "max_cost": self.max_cost,
        }

    def format_stats(self) -> str:
        s = self.stats()
        text = f"{s['total_tokens']:,} tokens, ${s['total_cost']:.4f}"
        if self.max_cost:
            text += f" of ${self.max_cost:.2f} budget"
        return text
