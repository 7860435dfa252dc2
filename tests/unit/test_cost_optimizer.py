"""Tests for cost tracking, budgets and recommendations."""

from datetime import timedelta

import pytest

from inference_orchestrator.exceptions import BudgetExceeded
from inference_orchestrator.finops import AlertSeverity, CostOptimizer
from inference_orchestrator.finops.cost_optimizer import DAY, GLOBAL_SCOPE, OptimizationContext
from inference_orchestrator.routing.capabilities import CAPABILITIES
from inference_orchestrator.schemas.inference import TokenUsage

SONNET = "claude-3-5-sonnet-20241022"


@pytest.fixture
def optimizer(clock, event_queue, metrics):
    return CostOptimizer(event_queue=event_queue, metrics=metrics, clock=clock)


class TestCostOptimizer:
    """Test suite for the cost ledger."""

    @pytest.mark.asyncio
    async def test_record_usage_prices_tokens(self, optimizer, metrics):
        record = await optimizer.record_usage(
            "user_1", SONNET, TokenUsage.from_counts(1000, 2000), "communication_advisor"
        )

        assert record.cost_cents == pytest.approx(0.3 + 3.0)
        assert metrics.get_total("cost_cents_total") == pytest.approx(3.3)
        assert metrics.get_total("tokens_processed") == 3000

    @pytest.mark.asyncio
    async def test_cache_hits_are_free_but_counted(self, optimizer):
        await optimizer.record_usage("user_1", SONNET, TokenUsage.from_counts(1000, 1000), "a")
        await optimizer.record_usage(
            "user_1", SONNET, TokenUsage.from_counts(1000, 1000), "a", cache_hit=True
        )

        summary = optimizer.get_metrics("user_1")
        assert summary.total_requests == 2
        assert summary.cached_requests == 1
        assert summary.cache_hit_rate == 0.5
        assert summary.total_cost_cents == pytest.approx(1.8)

    @pytest.mark.asyncio
    async def test_global_ledger_aggregates_scopes(self, optimizer):
        await optimizer.record_usage("alice", "gpt-4o", TokenUsage.from_counts(1000, 0), "a")
        await optimizer.record_usage("bob", "gpt-4o", TokenUsage.from_counts(1000, 0), "a")

        assert optimizer.get_metrics(GLOBAL_SCOPE).total_cost_cents == pytest.approx(0.5)
        assert optimizer.get_metrics("alice").total_cost_cents == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_time_range_filter(self, optimizer, clock):
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(1000, 0), "a")
        clock.advance(2 * 3600)
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(2000, 0), "a")

        recent = optimizer.get_metrics("user_1", time_range=timedelta(hours=1))
        assert recent.total_requests == 1
        assert recent.total_cost_cents == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_history_limit(self, clock):
        optimizer = CostOptimizer(history_limit=3, clock=clock)
        for _ in range(5):
            await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(10, 10), "a")
        assert len(optimizer.records("user_1")) == 3

    @pytest.mark.asyncio
    async def test_retention_prunes_old_records(self, clock):
        optimizer = CostOptimizer(retention_days=1, clock=clock)
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(10, 10), "a")
        clock.advance(DAY + 1)
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(10, 10), "a")
        assert len(optimizer.records("user_1")) == 1

    @pytest.mark.asyncio
    async def test_budget_alerts(self, optimizer, event_sink, event_queue):
        """Warning at 80% of the ceiling, critical above it, each published once."""
        optimizer.set_budget("user_1", daily_limit_cents=10.0)

        await optimizer.record_usage("user_1", "gpt-4-turbo", TokenUsage.from_counts(0, 2700), "a")
        alerts = await optimizer.check_budget("user_1")
        assert [a.severity for a in alerts] == [AlertSeverity.WARNING]
        assert alerts[0].percent_used == pytest.approx(81.0)

        await optimizer.check_budget("user_1")
        await optimizer.record_usage("user_1", "gpt-4-turbo", TokenUsage.from_counts(0, 1000), "a")
        alerts = await optimizer.check_budget("user_1")
        assert alerts[0].severity == AlertSeverity.CRITICAL

        await event_queue.flush()
        published = event_sink.of_type("budget_alert")
        assert [e["severity"] for e in published] == ["warning", "critical"]

    @pytest.mark.asyncio
    async def test_budget_is_advisory_by_default(self, optimizer):
        optimizer.set_budget("user_1", daily_limit_cents=1.0)
        await optimizer.record_usage("user_1", "gpt-4-turbo", TokenUsage.from_counts(0, 1000), "a")
        optimizer.enforce_budget("user_1")

    @pytest.mark.asyncio
    async def test_hard_block(self, clock):
        optimizer = CostOptimizer(hard_block=True, clock=clock)
        optimizer.set_budget("user_1", daily_limit_cents=1.0)
        optimizer.enforce_budget("user_1")

        await optimizer.record_usage("user_1", "gpt-4-turbo", TokenUsage.from_counts(0, 1000), "a")
        with pytest.raises(BudgetExceeded) as exc_info:
            optimizer.enforce_budget("user_1")
        assert exc_info.value.limit_cents == 1.0
        assert exc_info.value.spent_cents == pytest.approx(3.0)

    def test_tier_default_budgets(self, optimizer):
        assert optimizer.get_budget("premium_user").daily_limit_cents == 1000
        assert optimizer.get_budget("someone").daily_limit_cents == 200
        assert optimizer.get_budget(GLOBAL_SCOPE) is None

    def test_set_budget_validates(self, optimizer):
        with pytest.raises(ValueError):
            optimizer.set_budget("user_1", daily_limit_cents=0)

    @pytest.mark.asyncio
    async def test_recommendations(self, optimizer):
        """Low cache hit rate, expensive model and prompt-heavy usage are all flagged."""
        for _ in range(10):
            await optimizer.record_usage(
                "user_1", "claude-3-opus-20240229", TokenUsage.from_counts(3000, 500), "insight_generator"
            )

        categories = [s.category for s in optimizer.recommend("user_1")]
        assert categories[0] == "caching"
        assert "model_selection" in categories
        assert "prompt_size" in categories
        assert "token_usage" in categories

    def test_no_recommendations_without_history(self, optimizer):
        assert optimizer.recommend("nobody") == []

    @pytest.mark.asyncio
    async def test_spending_analysis(self, optimizer):
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(1000, 1000), "a")
        analysis = optimizer.get_spending_analysis("user_1", days=7)

        assert len(analysis["daily_costs"]) == 7
        assert analysis["daily_costs"][-1]["cost_cents"] == pytest.approx(1.25)
        assert analysis["summary"]["total_requests"] == 1

    @pytest.mark.asyncio
    async def test_model_cost_moving_average(self, optimizer):
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(1000, 0), "a")
        await optimizer.record_usage("user_1", "gpt-4o", TokenUsage.from_counts(2000, 0), "a")

        assert optimizer.get_model_cost_averages()["gpt-4o"] == pytest.approx(0.1 * 0.5 + 0.9 * 0.25)


ADVISOR = CAPABILITIES["communication_advisor"]


class TestRequestOptimization:
    """Test suite for per-request cost rules."""

    def test_nothing_to_optimize(self, optimizer, make_request):
        request = make_request()
        optimized = optimizer.optimize_request(request, ADVISOR, OptimizationContext())

        assert optimized.request is request
        assert optimized.overrides == {}
        assert optimized.analysis.recommendations == []
        assert optimized.analysis.savings_cents == 0.0

    def test_free_tier_overspend_switches_to_cheapest_model(self, optimizer, make_request):
        context = OptimizationContext(tier="free", monthly_spend_cents=600)
        optimized = optimizer.optimize_request(make_request(), ADVISOR, context)

        assert optimized.overrides == {"provider": "openai", "model": "gpt-4o-mini"}
        assert optimized.analysis.warnings == ["Using a significantly cheaper model may affect response quality"]
        assert optimized.analysis.optimized_cost_cents < optimized.analysis.estimated_cost_cents
        assert optimized.analysis.savings_percent > 90

    def test_cheaper_model_respects_registered_providers(self, optimizer, make_request):
        context = OptimizationContext(tier="free", monthly_spend_cents=600)
        optimized = optimizer.optimize_request(make_request(), ADVISOR, context, providers=["anthropic"])

        assert optimized.overrides == {"provider": "anthropic", "model": "claude-3-haiku-20240307"}

    def test_paid_tiers_keep_their_model(self, optimizer, make_request):
        context = OptimizationContext(tier="premium", monthly_spend_cents=5000)
        assert optimizer.optimize_request(make_request(), ADVISOR, context).overrides == {}

    def test_high_volume_caps_tokens(self, optimizer, make_request):
        context = OptimizationContext(request_volume=51)

        capped = optimizer.optimize_request(make_request(), ADVISOR, context)
        already_small = optimizer.optimize_request(make_request(max_tokens=200), ADVISOR, context)

        assert capped.overrides == {"max_tokens": 500}
        assert already_small.overrides == {}

    def test_large_payload_is_compacted(self, optimizer, make_request):
        request = make_request("Tell me more.   \n\n" * 600)
        optimized = optimizer.optimize_request(request, ADVISOR, OptimizationContext())

        assert optimized.request.input_payload["prompt"] == " ".join(["Tell me more."] * 600)
        assert optimized.request.id == request.id
        assert optimized.analysis.risk_factors
        assert optimized.analysis.savings_cents > 0

    @pytest.mark.asyncio
    async def test_context_from_ledger(self, optimizer, clock):
        await optimizer.record_usage("user_1", SONNET, TokenUsage.from_counts(1_000_000, 300_000), "a")
        clock.advance(2 * 3600)
        for _ in range(3):
            await optimizer.record_usage("user_1", SONNET, TokenUsage.from_counts(10, 10), "a")

        context = optimizer.context_for("user_1")
        assert context.tier == "free"
        assert context.monthly_spend_cents == pytest.approx(750.0, rel=1e-3)
        assert context.request_volume == 3
        assert optimizer.context_for("user_1", user_type="enterprise").tier == "enterprise"

    def test_select_cost_effective_model_budget(self, optimizer):
        assert optimizer.select_cost_effective_model(ADVISOR) == ("openai", "gpt-4o-mini")
        assert optimizer.select_cost_effective_model(ADVISOR, providers=["anthropic"]) == (
            "anthropic",
            "claude-3-haiku-20240307",
        )
