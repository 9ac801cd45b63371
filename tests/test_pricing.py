"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, the fallback chain and error handling.
"""

import pytest
from decimal import Decimal

from ai_usage_meter.core.pricing import (
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    calculate_cost,
)
from ai_usage_meter.core.token_counter import TokenUsage


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens sums every counter."""
        usage = TokenUsage(
            input_tokens=100,
            output_tokens=50,
            cache_read_tokens=20,
            cache_write_tokens=10,
            reasoning_tokens=5,
        )
        assert usage.total_tokens == 185

    def test_zero_tokens(self):
        """Verify zero token handling."""
        assert TokenUsage().total_tokens == 0


class TestPricingTable:
    """Test pricing table resolution."""

    def test_exact_model(self):
        """Verify pricing retrieval for an exact table key."""
        pricing = PRICING_TABLE.get_pricing("claude-opus-4-6")
        assert pricing.input_per_million == Decimal("15.00")
        assert pricing.output_per_million == Decimal("75.00")

    def test_longest_prefix_wins(self):
        """Dated variants resolve through the longest matching prefix."""
        table = PricingTable(prices={
            "model-a": ModelPricing(Decimal("1"), Decimal("2")),
            "model-a-large": ModelPricing(Decimal("5"), Decimal("10")),
        })
        assert table.get_pricing("model-a-large-20250101").input_per_million == Decimal("5")
        assert table.get_pricing("model-a-20250101").input_per_million == Decimal("1")

    def test_unknown_haiku_uses_category_rate(self):
        """A haiku model missing from the table gets the haiku fallback rate."""
        pricing = PRICING_TABLE.get_pricing("claude-haiku-9-experimental")
        assert pricing.input_per_million == Decimal("0.80")
        assert pricing.output_per_million == Decimal("4.00")

    def test_unknown_model_uses_default(self):
        """Models outside every category fall back to the default rate."""
        pricing = PRICING_TABLE.get_pricing("gpt-5-codex")
        assert pricing.input_per_million == Decimal("3.00")
        assert pricing.output_per_million == Decimal("15.00")

    def test_unsupported_model_raises_error(self):
        """Verify error when the table has no default."""
        table = PricingTable(prices={})
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            table.get_pricing("unknown-model")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_opus_cost_with_cache(self):
        """Verify the full opus estimate including cache traffic."""
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=100_000,
            cache_read_tokens=500_000,
            cache_write_tokens=200_000,
        )
        cost = calculate_cost("claude-opus-4-6", usage)
        # Input: 1M * $15.00 = $15.00
        # Output: 0.1M * $75.00 = $7.50
        # Cache read: 0.5M * $1.50 = $0.75
        # Cache write: 0.2M * $18.75 = $3.75
        assert cost == 27.00

    def test_haiku_fallback_cost(self):
        """Verify the haiku fallback rates are applied to the estimate."""
        usage = TokenUsage(input_tokens=1_000_000, output_tokens=1_000_000)
        assert calculate_cost("some-haiku-model", usage) == 4.80

    def test_reasoning_tokens_not_billed(self):
        """Reasoning tokens are tracked but not priced separately."""
        usage = TokenUsage(input_tokens=1_000_000, reasoning_tokens=1_000_000)
        assert calculate_cost("claude-sonnet-4-5", usage) == 3.00

    def test_rounding_up_behavior(self):
        """Verify costs round UP to the micro-dollar (conservative bias)."""
        usage = TokenUsage(input_tokens=1)
        cost = calculate_cost("claude-sonnet-4-5", usage)
        # 1/1M * $3.00 = $0.000003 exactly
        assert cost == 0.000003

        usage = TokenUsage(output_tokens=1)
        cost = calculate_cost("claude-3-haiku-20240307", usage)
        # 1/1M * $1.25 = $0.00000125 -> $0.000002
        assert cost == 0.000002

    def test_custom_table(self):
        """Verify an injected table replaces the built-in one."""
        table = PricingTable(prices={}, default=ModelPricing(Decimal("1"), Decimal("1")))
        usage = TokenUsage(input_tokens=500_000, output_tokens=500_000)
        assert calculate_cost("anything", usage, table) == 1.00

    def test_unsupported_model_propagates(self):
        """Verify the pricing error propagates from calculate_cost."""
        with pytest.raises(ValueError):
            calculate_cost("x", TokenUsage(input_tokens=1), PricingTable(prices={}))
