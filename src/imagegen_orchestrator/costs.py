from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .models import CostDelta, RequestCosts
from .settings import RuntimeSettings

PricingFunction = Callable[[RequestCosts], float]


@dataclass(frozen=True)
class PriceSheet:
    """Linear pricing over usage totals, in USD."""

    per_image: float = 0.04
    per_1k_llm_tokens: float = 0.005
    per_1k_embedding_tokens: float = 0.0001

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "PriceSheet":
        return cls(
            per_image=settings.price_per_image,
            per_1k_llm_tokens=settings.price_per_1k_llm_tokens,
            per_1k_embedding_tokens=settings.price_per_1k_embedding_tokens,
        )

    def __call__(self, costs: RequestCosts) -> float:
        total = (
            costs.image_generations * self.per_image
            + costs.llm_tokens / 1_000 * self.per_1k_llm_tokens
            + costs.embedding_tokens / 1_000 * self.per_1k_embedding_tokens
        )
        return round(total, 6)


default_pricing: PricingFunction = PriceSheet()


def apply_cost_delta(costs: RequestCosts, delta: CostDelta, pricing: PricingFunction = default_pricing) -> RequestCosts:
    """Add ``delta`` to ``costs`` and reprice the new totals.

    The estimate never drops below the previous one, so a pricing change
    between calls cannot make the running total decrease.
    """
    totals = RequestCosts(
        llm_tokens=costs.llm_tokens + delta.llm_tokens,
        image_generations=costs.image_generations + delta.image_generations,
        embedding_tokens=costs.embedding_tokens + delta.embedding_tokens,
    )
    estimate = pricing(totals)
    if estimate < 0:
        raise ValueError(f"pricing function returned a negative cost: {estimate}")
    totals.total_estimated_cost = max(estimate, costs.total_estimated_cost)
    return totals
