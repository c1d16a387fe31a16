"""Per-model token pricing and request cost estimation.

Prices are USD per 1M tokens, split by input and output. The table only
contains real (provider, model) entries so it can be iterated directly as
the candidate set; models that are not in the table are costed with
UNKNOWN_MODEL_PRICING, a mid-tier price that lives outside the table.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import NamedTuple


class ModelKey(NamedTuple):
    """Identity of a model at a specific provider."""

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"

    @classmethod
    def parse(cls, value: str) -> ModelKey:
        """Parse a "provider:model" string."""
        provider, sep, model = value.partition(":")
        if not sep or not provider or not model:
            raise ValueError(f"Expected 'provider:model', got {value!r}")
        return cls(provider, model)


@dataclass(frozen=True)
class ModelPricing:
    """Token pricing for one model.

    Attributes:
        input_per_million: USD per 1M input tokens
        output_per_million: USD per 1M output tokens
    """

    input_per_million: float
    output_per_million: float

    def __post_init__(self) -> None:
        if self.input_per_million < 0 or self.output_per_million < 0:
            raise ValueError("Token prices cannot be negative")

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        """USD cost of a request with the given token counts."""
        return (input_tokens / 1_000_000) * self.input_per_million + (
            output_tokens / 1_000_000
        ) * self.output_per_million


# Official list prices, USD per 1M tokens.
MODEL_PRICING: Mapping[ModelKey, ModelPricing] = MappingProxyType(
    {
        # OpenAI
        ModelKey("openai", "gpt-4o"): ModelPricing(5.00, 15.00),
        ModelKey("openai", "gpt-4o-mini"): ModelPricing(0.15, 0.60),
        ModelKey("openai", "gpt-4-turbo"): ModelPricing(10.00, 30.00),
        ModelKey("openai", "gpt-3.5-turbo"): ModelPricing(0.50, 1.50),
        # Anthropic
        ModelKey("anthropic", "claude-3-opus"): ModelPricing(15.00, 75.00),
        ModelKey("anthropic", "claude-3-sonnet"): ModelPricing(3.00, 15.00),
        ModelKey("anthropic", "claude-3-haiku"): ModelPricing(0.25, 1.25),
        ModelKey("anthropic", "claude-3-5-sonnet"): ModelPricing(3.00, 15.00),
    }
)

UNKNOWN_MODEL_PRICING = ModelPricing(2.00, 6.00)


def get_model_pricing(
    provider: str,
    model: str,
    pricing: Mapping[ModelKey, ModelPricing] = MODEL_PRICING,
) -> ModelPricing:
    """Return pricing for a model, or the mid-tier fallback if unknown."""
    return pricing.get(ModelKey(provider, model), UNKNOWN_MODEL_PRICING)


def estimate_cost(
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    pricing: Mapping[ModelKey, ModelPricing] = MODEL_PRICING,
) -> float:
    """Estimate the USD cost of a request.

    Args:
        provider: Provider name (e.g. "openai")
        model: Model name (e.g. "gpt-4o")
        input_tokens: Prompt tokens
        output_tokens: Completion tokens
        pricing: Pricing table to consult

    Returns:
        Estimated cost in USD
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts cannot be negative")
    return get_model_pricing(provider, model, pricing).cost(input_tokens, output_tokens)


def get_all_models_by_price(
    input_tokens: int = 1000,
    output_tokens: int = 1000,
    pricing: Mapping[ModelKey, ModelPricing] = MODEL_PRICING,
) -> list[tuple[ModelKey, float]]:
    """List every priced model with its cost for the given request, cheapest first."""
    costs = [(key, price.cost(input_tokens, output_tokens)) for key, price in pricing.items()]
    costs.sort(key=lambda item: (item[1], str(item[0])))
    return costs
