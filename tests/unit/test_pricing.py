"""Tests for model pricing."""

import pytest

from inference_orchestrator.finops.pricing import (
    DEFAULT_PRICING,
    MODEL_PRICING,
    calculate_cost,
    get_pricing,
    is_known_model,
)

EXPECTED_RATES = {
    "claude-3-5-sonnet-20241022": (0.3, 1.5),
    "claude-3-opus-20240229": (1.5, 7.5),
    "claude-3-haiku-20240307": (0.025, 0.125),
    "gpt-4o": (0.25, 1.0),
    "gpt-4o-mini": (0.015, 0.06),
    "gpt-4-turbo": (1.0, 3.0),
    "gpt-3.5-turbo": (0.05, 0.15),
}


class TestPricing:
    def test_table_matches_expected_rates(self):
        assert set(MODEL_PRICING) == set(EXPECTED_RATES)

    @pytest.mark.parametrize("model,rates", sorted(EXPECTED_RATES.items()))
    def test_cost_formula(self, model, rates):
        """cost = input/1000 * input_rate + output/1000 * output_rate."""
        input_rate, output_rate = rates
        assert calculate_cost(model, 1234, 567) == pytest.approx(
            1234 / 1000 * input_rate + 567 / 1000 * output_rate
        )

    def test_zero_tokens_cost_nothing(self):
        assert calculate_cost("gpt-4o", 0, 0) == 0.0

    def test_dated_variants_resolve(self):
        assert get_pricing("claude-3-5-sonnet-20250101").model == "claude-3-5-sonnet-20241022"
        assert get_pricing("gpt-4o-mini-2024-07-18").model == "gpt-4o-mini"
        assert get_pricing("gpt-4o-2024-08-06").model == "gpt-4o"

    def test_unknown_model_billed_at_max_rates(self):
        assert not is_known_model("mystery-model")
        assert get_pricing("mystery-model") is DEFAULT_PRICING
        assert DEFAULT_PRICING.input_rate == 1.5
        assert DEFAULT_PRICING.output_rate == 7.5
        assert calculate_cost(None, 1000, 1000) == pytest.approx(9.0)
