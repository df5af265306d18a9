"""Static per-model price and output-limit tables.

Prices are USD per million tokens, input and output priced independently.
Model ids are matched exactly first, then by longest known prefix so dated
snapshots (``claude-sonnet-4-5-20250929``) resolve to their family entry.
Unknown models fall back to DEFAULT_PRICING / the caller's default limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType


@dataclass(frozen=True)
class ModelPricing:
    input_per_million: float
    output_per_million: float


DEFAULT_PRICING = ModelPricing(3.0, 15.0)

MODEL_PRICING: MappingProxyType[str, ModelPricing] = MappingProxyType({
    "claude-opus-4-6": ModelPricing(5.0, 25.0),
    "claude-opus-4-5": ModelPricing(5.0, 25.0),
    "claude-opus-4-1": ModelPricing(15.0, 75.0),
    "claude-opus-4": ModelPricing(15.0, 75.0),
    "claude-sonnet-4-6": ModelPricing(3.0, 15.0),
    "claude-sonnet-4-5": ModelPricing(3.0, 15.0),
    "claude-sonnet-4": ModelPricing(3.0, 15.0),
    "claude-haiku-4-5": ModelPricing(1.0, 5.0),
    "claude-3-5-haiku": ModelPricing(0.8, 4.0),
})

MODEL_MAX_TOKENS: MappingProxyType[str, int] = MappingProxyType({
    "claude-opus-4-6": 32000,
    "claude-opus-4-5": 32000,
    "claude-opus-4-1": 32000,
    "claude-opus-4": 32000,
    "claude-sonnet-4-6": 64000,
    "claude-sonnet-4-5": 64000,
    "claude-sonnet-4": 64000,
    "claude-haiku-4-5": 64000,
    "claude-3-5-haiku": 8192,
})


def _lookup(table: MappingProxyType, model: str):
    if model in table:
        return table[model]
    matches = [key for key in table if model.startswith(key)]
    if not matches:
        return None
    return table[max(matches, key=len)]


def get_pricing(model: str) -> ModelPricing:
    return _lookup(MODEL_PRICING, model) or DEFAULT_PRICING


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost in USD for one call (or a summed exchange)."""
    pricing = get_pricing(model)
    cost = (
        input_tokens * pricing.input_per_million
        + output_tokens * pricing.output_per_million
    ) / 1_000_000
    return round(cost, 6)


def get_max_tokens(model: str, default: int = 8192) -> int:
    """Output token ceiling for ``model``."""
    return _lookup(MODEL_MAX_TOKENS, model) or default
