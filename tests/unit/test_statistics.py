"""Tests for experiment statistics."""

import math

import pytest

from inference_orchestrator.experiments.statistics import (
    erf,
    normal_cdf,
    required_sample_size,
    two_proportion_z_test,
)


class TestErrorFunction:
    @pytest.mark.parametrize("x", [-2.5, -1.0, -0.3, 0.0, 0.4, 1.0, 2.0, 3.5])
    def test_erf_matches_reference(self, x):
        assert erf(x) == pytest.approx(math.erf(x), abs=2e-7)

    def test_normal_cdf(self):
        assert normal_cdf(0.0) == pytest.approx(0.5, abs=1e-6)
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
        assert normal_cdf(-1.96) == pytest.approx(0.025, abs=1e-4)


class TestTwoProportionZTest:
    def test_clear_difference_is_significant(self):
        """10% vs 20% conversion on 1000 users each."""
        result = two_proportion_z_test(100, 1000, 200, 1000)

        assert result.control_rate == pytest.approx(0.1)
        assert result.variant_rate == pytest.approx(0.2)
        assert result.difference == pytest.approx(0.1)
        assert result.relative_lift == pytest.approx(1.0)
        assert result.z_score == pytest.approx(6.262, abs=1e-3)
        assert result.p_value < 0.05
        assert result.statistically_significant is True
        low, high = result.confidence_interval
        assert low > 0 and high > low

    def test_identical_samples(self):
        result = two_proportion_z_test(150, 1000, 150, 1000)

        assert result.z_score == 0.0
        assert result.p_value == pytest.approx(1.0, abs=1e-6)
        assert result.statistically_significant is False

    def test_zero_variance(self):
        """No conversions anywhere gives no evidence either way."""
        result = two_proportion_z_test(0, 500, 0, 500)
        assert result.p_value == 1.0
        assert result.statistically_significant is False

    def test_empty_samples(self):
        result = two_proportion_z_test(0, 0, 0, 0)
        assert result.p_value == 1.0
        assert result.statistically_significant is False

    def test_small_difference_not_significant(self):
        result = two_proportion_z_test(100, 1000, 108, 1000)
        assert result.p_value > 0.05
        assert not result.statistically_significant

    def test_alpha_follows_confidence_level(self):
        """p of about 0.035 clears the default 0.05 bar but not a 0.99 level."""
        default = two_proportion_z_test(100, 1000, 130, 1000)
        strict = two_proportion_z_test(100, 1000, 130, 1000, confidence_level=0.99)

        assert 0.01 < default.p_value < 0.05
        assert default.statistically_significant
        assert strict.p_value == default.p_value
        assert not strict.statistically_significant

    def test_to_dict(self):
        data = two_proportion_z_test(100, 1000, 200, 1000, metric="signup", variant_id="b").to_dict()
        assert data["metric"] == "signup"
        assert data["variant_id"] == "b"
        assert data["control"] == {"conversions": 100, "sample_size": 1000}
        assert len(data["confidence_interval"]) == 2


class TestSampleSize:
    def test_reference_value(self):
        """10% baseline, 20% relative lift, 95% confidence, 80% power."""
        n = required_sample_size(0.10, 0.20)
        assert 3700 <= n <= 3900

    def test_smaller_effects_need_more_users(self):
        assert required_sample_size(0.10, 0.10) > required_sample_size(0.10, 0.30)

    def test_higher_confidence_needs_more_users(self):
        assert required_sample_size(0.1, 0.2, confidence_level=0.99) > required_sample_size(0.1, 0.2)

    @pytest.mark.parametrize("baseline,mde", [(0.0, 0.1), (1.0, 0.1), (0.1, 0.0)])
    def test_invalid_inputs(self, baseline, mde):
        with pytest.raises(ValueError):
            required_sample_size(baseline, mde)
