"""Static model pricing table.

Rates are US cents per 1,000 tokens, split by direction.
"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class ModelPricing:
    """Per-model token rates."""

    model: str
    provider: str
    input_rate: float
    output_rate: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000) * self.input_rate + (output_tokens / 1000) * self.output_rate


MODEL_PRICING: Dict[str, ModelPricing] = {
    p.model: p
    for p in (
        ModelPricing("claude-3-5-sonnet-20241022", "anthropic", 0.3, 1.5),
        ModelPricing("claude-3-opus-20240229", "anthropic", 1.5, 7.5),
        ModelPricing("claude-3-haiku-20240307", "anthropic", 0.025, 0.125),
        ModelPricing("gpt-4o", "openai", 0.25, 1.0),
        ModelPricing("gpt-4o-mini", "openai", 0.015, 0.06),
        ModelPricing("gpt-4-turbo", "openai", 1.0, 3.0),
        ModelPricing("gpt-3.5-turbo", "openai", 0.05, 0.15),
    )
}

# Unknown models are billed at the most expensive listed rates.
DEFAULT_PRICING = ModelPricing(
    "default",
    "unknown",
    max(p.input_rate for p in MODEL_PRICING.values()),
    max(p.output_rate for p in MODEL_PRICING.values()),
)


def get_pricing(model: Optional[str]) -> ModelPricing:
    """Pricing for a model id, matching dated or suffixed ids by longest prefix."""
    if not model:
        return DEFAULT_PRICING
    pricing = MODEL_PRICING.get(model)
    if pricing is not None:
        return pricing

    best: Optional[ModelPricing] = None
    best_len = 0
    for known, candidate in MODEL_PRICING.items():
        stem = known.rsplit("-", 1)[0] if known[-8:].isdigit() else known
        if model.startswith(stem) and len(stem) > best_len:
            best, best_len = candidate, len(stem)
    return best or DEFAULT_PRICING


def is_known_model(model: str) -> bool:
    return get_pricing(model) is not DEFAULT_PRICING


def calculate_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> float:
    """Cost in cents for one call; never raises for unknown models."""
    return get_pricing(model).cost(input_tokens, output_tokens)
