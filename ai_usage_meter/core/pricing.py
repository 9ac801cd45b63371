"""
Pricing calculations and rate management.

Handles cost computations for AI models billed per million tokens. The
table content is an input: callers may load their own with
``ai_usage_meter.config.loader.load_pricing_table``.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_read_per_million: Decimal = Decimal("0")
    cache_create_per_million: Decimal = Decimal("0")


@dataclass(frozen=True)
class PricingTable:
    """Pricing table with a prefix, category and default fallback chain.

    Resolution order:
    1. Exact model identifier
    2. Longest table key that prefixes the model (dated or suffixed variants)
    3. First category whose keyword the model contains (e.g. "opus")
    4. The default rate
    """
    prices: Dict[str, ModelPricing]
    categories: Dict[str, ModelPricing] = field(default_factory=dict)
    default: Optional[ModelPricing] = None

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier as reported by the source

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If nothing in the chain matches and no default is set
        """
        key = (model or "").strip()
        if key in self.prices:
            return self.prices[key]

        lowered = key.lower()
        prefix_matches = [name for name in self.prices if name and lowered.startswith(name.lower())]
        if prefix_matches:
            return self.prices[max(prefix_matches, key=len)]

        for keyword, pricing in self.categories.items():
            if keyword.lower() in lowered:
                return pricing

        if self.default is None:
            raise ValueError(f"Unsupported model: {model}")
        return self.default


_OPUS = ModelPricing(
    input_per_million=Decimal("15.00"),
    output_per_million=Decimal("75.00"),
    cache_read_per_million=Decimal("1.50"),
    cache_create_per_million=Decimal("18.75"),
)
_SONNET = ModelPricing(
    input_per_million=Decimal("3.00"),
    output_per_million=Decimal("15.00"),
    cache_read_per_million=Decimal("0.30"),
    cache_create_per_million=Decimal("3.75"),
)
_HAIKU_35 = ModelPricing(
    input_per_million=Decimal("0.80"),
    output_per_million=Decimal("4.00"),
    cache_read_per_million=Decimal("0.08"),
    cache_create_per_million=Decimal("1.00"),
)
_HAIKU_3 = ModelPricing(
    input_per_million=Decimal("0.25"),
    output_per_million=Decimal("1.25"),
    cache_read_per_million=Decimal("0.03"),
    cache_create_per_million=Decimal("0.30"),
)

# Default table; unknown models fall back to sonnet rates
PRICING_TABLE = PricingTable(
    prices={
        "claude-opus-4-6": _OPUS,
        "claude-opus-4-5-20251101": _OPUS,
        "claude-3-opus-20240229": _OPUS,
        "claude-sonnet-4-5-20250929": _SONNET,
        "claude-sonnet-4-20250514": _SONNET,
        "claude-sonnet-4-5": _SONNET,
        "claude-sonnet-4": _SONNET,
        "claude-3-sonnet-20240229": _SONNET,
        "claude-haiku-3-5-20241022": _HAIKU_35,
        "claude-3-5-haiku-20241022": _HAIKU_35,
        "claude-3-haiku-20240307": _HAIKU_3,
    },
    categories={
        "opus": _OPUS,
        "haiku": _HAIKU_35,
    },
    default=_SONNET,
)


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to consult

    Returns:
        Total cost in USD rounded UP to 6 decimal places

    Raises:
        ValueError: If the table cannot price the model
    """
    pricing = table.get_pricing(model)

    input_cost = Decimal(usage.input_tokens) / MILLION * pricing.input_per_million
    output_cost = Decimal(usage.output_tokens) / MILLION * pricing.output_per_million
    cache_read_cost = Decimal(usage.cache_read_tokens) / MILLION * pricing.cache_read_per_million
    cache_create_cost = Decimal(usage.cache_write_tokens) / MILLION * pricing.cache_create_per_million

    total_cost = input_cost + output_cost + cache_read_cost + cache_create_cost
    rounded_cost = total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)

    return float(rounded_cost)
