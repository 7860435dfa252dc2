"""Cost accounting and budgets."""

from .cost_optimizer import (
    AlertSeverity,
    Budget,
    BudgetAlert,
    CostAnalysis,
    CostMetrics,
    CostOptimizer,
    CostRecord,
    OptimizationContext,
    OptimizationStrategy,
    OptimizedRequest,
)
from .pricing import DEFAULT_PRICING, MODEL_PRICING, ModelPricing, calculate_cost, get_pricing

__all__ = [
    "AlertSeverity",
    "Budget",
    "BudgetAlert",
    "CostAnalysis",
    "CostMetrics",
    "CostOptimizer",
    "CostRecord",
    "DEFAULT_PRICING",
    "MODEL_PRICING",
    "ModelPricing",
    "OptimizationContext",
    "OptimizationStrategy",
    "OptimizedRequest",
    "calculate_cost",
    "get_pricing",
]
