"""Two-proportion significance testing for experiment dashboards.

The normal CDF comes from the Abramowitz-Stegun 7.1.26 error-function
approximation (absolute error below 1.5e-7). Good enough for dashboards;
regulated analyses should use a vetted statistics package.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Tuple

# Abramowitz and Stegun formula 7.1.26
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

Z_SCORES = {0.80: 1.28, 0.90: 1.645, 0.95: 1.96, 0.99: 2.576}
POWER_Z_SCORES = {0.80: 0.84, 0.90: 1.28, 0.95: 1.645}


def erf(x: float) -> float:
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


def z_for_confidence(confidence_level: float) -> float:
    """Two-sided critical value for the closest tabulated confidence level."""
    closest = min(Z_SCORES, key=lambda level: abs(level - confidence_level))
    return Z_SCORES[closest]


@dataclass
class SignificanceResult:
    """Control-vs-variant comparison of one conversion metric."""

    metric: str
    variant_id: str
    control_conversions: int
    control_sample_size: int
    variant_conversions: int
    variant_sample_size: int
    control_rate: float
    variant_rate: float
    difference: float
    relative_lift: float
    z_score: float
    p_value: float
    confidence_interval: Tuple[float, float]
    confidence_level: float
    statistically_significant: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "variant_id": self.variant_id,
            "control": {"conversions": self.control_conversions, "sample_size": self.control_sample_size},
            "variant": {"conversions": self.variant_conversions, "sample_size": self.variant_sample_size},
            "control_rate": round(self.control_rate, 6),
            "variant_rate": round(self.variant_rate, 6),
            "difference": round(self.difference, 6),
            "relative_lift": round(self.relative_lift, 6),
            "z_score": round(self.z_score, 4),
            "p_value": round(self.p_value, 6),
            "confidence_interval": [round(v, 6) for v in self.confidence_interval],
            "confidence_level": self.confidence_level,
            "statistically_significant": self.statistically_significant,
        }


def two_proportion_z_test(
    control_conversions: int,
    control_sample_size: int,
    variant_conversions: int,
    variant_sample_size: int,
    confidence_level: float = 0.95,
    metric: str = "conversion",
    variant_id: str = "variant",
) -> SignificanceResult:
    """Pooled two-proportion z-test with a two-tailed p-value.

    A result is significant when ``p_value < 1 - confidence_level``, i.e. the
    usual p < 0.05 at the default 0.95. Experiments with a stricter
    confidence level get the matching, smaller alpha.
    """
    n1, n2 = control_sample_size, variant_sample_size
    p1 = control_conversions / n1 if n1 else 0.0
    p2 = variant_conversions / n2 if n2 else 0.0
    difference = p2 - p1
    relative_lift = difference / p1 if p1 else 0.0

    z_score = 0.0
    p_value = 1.0
    standard_error = 0.0
    if n1 and n2:
        pooled = (control_conversions + variant_conversions) / (n1 + n2)
        standard_error = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        if standard_error > 0:
            z_score = difference / standard_error
            p_value = 2 * (1 - normal_cdf(abs(z_score)))
    p_value = min(1.0, max(0.0, p_value))

    margin = z_for_confidence(confidence_level) * standard_error
    alpha = 1 - confidence_level
    return SignificanceResult(
        metric=metric,
        variant_id=variant_id,
        control_conversions=control_conversions,
        control_sample_size=n1,
        variant_conversions=variant_conversions,
        variant_sample_size=n2,
        control_rate=p1,
        variant_rate=p2,
        difference=difference,
        relative_lift=relative_lift,
        z_score=z_score,
        p_value=p_value,
        confidence_interval=(difference - margin, difference + margin),
        confidence_level=confidence_level,
        statistically_significant=bool(n1 and n2) and p_value < alpha,
    )


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    confidence_level: float = 0.95,
    power: float = 0.8,
) -> int:
    """Per-variant sample size to detect a relative lift of minimum_detectable_effect."""
    if not 0 < baseline_rate < 1:
        raise ValueError("baseline_rate must be between 0 and 1")
    if minimum_detectable_effect <= 0:
        raise ValueError("minimum_detectable_effect must be positive")

    z_alpha = z_for_confidence(confidence_level)
    z_beta = POWER_Z_SCORES[min(POWER_Z_SCORES, key=lambda level: abs(level - power))]
    p1 = baseline_rate
    p2 = min(baseline_rate * (1 + minimum_detectable_effect), 0.9999)
    p_bar = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)
