"""Cost accounting, budget alerting and optimization recommendations."""

import asyncio
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

import orjson
import structlog

from inference_orchestrator.exceptions import BudgetExceeded
from inference_orchestrator.finops.pricing import MODEL_PRICING, calculate_cost, get_pricing
from inference_orchestrator.rate_limit.rate_limiter import resolve_tier
from inference_orchestrator.routing.capabilities import CapabilityConfig
from inference_orchestrator.schemas.inference import InferenceRequest, TokenUsage
from inference_orchestrator.telemetry.event_sink import EventQueue
from inference_orchestrator.telemetry.metrics import MetricsCollector

logger = structlog.get_logger()

GLOBAL_SCOPE = "global"
DAY = 86400.0
MONTH = 30 * DAY

WARNING_THRESHOLD = 0.8
MODEL_COST_ALPHA = 0.1


@dataclass
class CostRecord:
    """One billed (or cache-served) request."""

    scope_key: str
    cost_cents: float
    token_usage: TokenUsage
    model: str
    operation: str
    timestamp: float = field(default_factory=time.time)
    cache_hit: bool = False
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_key": self.scope_key,
            "cost_cents": self.cost_cents,
            "token_usage": self.token_usage.model_dump(),
            "model": self.model,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "cache_hit": self.cache_hit,
            "request_id": self.request_id,
        }


@dataclass
class Budget:
    """Spend ceilings for one scope, in cents."""

    daily_limit_cents: float
    monthly_limit_cents: Optional[float] = None


TIER_BUDGETS: Dict[str, Budget] = {
    "free": Budget(daily_limit_cents=200, monthly_limit_cents=2000),
    "premium": Budget(daily_limit_cents=1000, monthly_limit_cents=10000),
    "enterprise": Budget(daily_limit_cents=5000, monthly_limit_cents=100000),
}


class AlertSeverity(str, Enum):
    """Budget alert levels."""

    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class BudgetAlert:
    """Advisory notice that a scope is close to or over its ceiling."""

    scope: str
    period: str
    severity: AlertSeverity
    spent_cents: float
    limit_cents: float
    timestamp: float = field(default_factory=time.time)

    @property
    def percent_used(self) -> float:
        if self.limit_cents <= 0:
            return 100.0
        return self.spent_cents / self.limit_cents * 100

    @property
    def message(self) -> str:
        if self.severity == AlertSeverity.CRITICAL:
            return f"{self.period.capitalize()} budget exceeded for {self.scope}: {self.percent_used:.1f}% used"
        return f"{self.period.capitalize()} budget at {self.percent_used:.1f}% for {self.scope}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "period": self.period,
            "severity": self.severity.value,
            "spent_cents": round(self.spent_cents, 6),
            "limit_cents": self.limit_cents,
            "percent_used": round(self.percent_used, 2),
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass
class CostMetrics:
    """Aggregates over a scope's cost records."""

    scope: str
    total_cost_cents: float = 0.0
    total_requests: int = 0
    cached_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_by_model: Dict[str, float] = field(default_factory=dict)
    requests_by_model: Dict[str, int] = field(default_factory=dict)
    cost_by_operation: Dict[str, float] = field(default_factory=dict)
    period_start: Optional[float] = None
    period_end: Optional[float] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def average_cost_per_request(self) -> float:
        return self.total_cost_cents / self.total_requests if self.total_requests else 0.0

    @property
    def cache_hit_rate(self) -> float:
        return self.cached_requests / self.total_requests if self.total_requests else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "total_cost_cents": round(self.total_cost_cents, 6),
            "total_requests": self.total_requests,
            "cached_requests": self.cached_requests,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "average_cost_per_request": round(self.average_cost_per_request, 6),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_by_model": {k: round(v, 6) for k, v in self.cost_by_model.items()},
            "requests_by_model": dict(self.requests_by_model),
            "cost_by_operation": {k: round(v, 6) for k, v in self.cost_by_operation.items()},
        }


@dataclass
class OptimizationStrategy:
    """Cost optimization recommendation."""

    title: str
    description: str
    category: str
    potential_savings_cents: float
    implementation_effort: str  # low, medium, high
    priority: int  # 1 is highest

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "potential_savings_cents": round(self.potential_savings_cents, 4),
            "implementation_effort": self.implementation_effort,
            "priority": self.priority,
        }


# Request-level rule thresholds.
FREE_TIER_MONTHLY_SPEND_CENTS = 500.0
HIGH_VOLUME_REQUESTS_PER_HOUR = 50
HIGH_VOLUME_MAX_TOKENS = 500
LARGE_INPUT_CHARS = 5000
CHARS_PER_TOKEN = 4
HOUR = 3600.0


@dataclass
class OptimizationContext:
    """Caller state read by the request-level rules."""

    tier: str = "free"
    monthly_spend_cents: float = 0.0
    request_volume: int = 0


@dataclass
class CostAnalysis:
    """Estimated cost of a request before and after optimization."""

    estimated_cost_cents: float
    optimized_cost_cents: float
    recommendations: List[str] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def savings_cents(self) -> float:
        return self.estimated_cost_cents - self.optimized_cost_cents

    @property
    def savings_percent(self) -> float:
        if self.estimated_cost_cents <= 0:
            return 0.0
        return self.savings_cents / self.estimated_cost_cents * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimated_cost_cents": round(self.estimated_cost_cents, 6),
            "optimized_cost_cents": round(self.optimized_cost_cents, 6),
            "savings_cents": round(self.savings_cents, 6),
            "savings_percent": round(self.savings_percent, 2),
            "recommendations": list(self.recommendations),
            "risk_factors": list(self.risk_factors),
            "warnings": list(self.warnings),
        }


@dataclass
class OptimizedRequest:
    """A request rewritten for cost, plus routing overrides to apply."""

    request: InferenceRequest
    overrides: Dict[str, Any]
    analysis: CostAnalysis


def compress_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Collapse runs of whitespace in string values."""
    return {k: " ".join(v.split()) if isinstance(v, str) else v for k, v in payload.items()}


def payload_size(payload: Mapping[str, Any]) -> int:
    return len(orjson.dumps(payload, default=str))


class CostOptimizer:
    """Per-scope cost ledger with advisory budget checks."""

    def __init__(
        self,
        history_limit: int = 1000,
        retention_days: int = 30,
        hard_block: bool = False,
        event_queue: Optional[EventQueue] = None,
        metrics: Optional[MetricsCollector] = None,
        check_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.history_limit = history_limit
        self.retention_seconds = retention_days * DAY
        self.hard_block = hard_block
        self.event_queue = event_queue
        self.metrics = metrics
        self.check_interval = check_interval
        self._clock = clock

        self._records: Dict[str, Deque[CostRecord]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._budgets: Dict[str, Budget] = {}
        self._alert_levels: Dict[Tuple[str, str], AlertSeverity] = {}
        self._model_cost_ema: Dict[str, float] = {}
        self._check_task: Optional[asyncio.Task] = None
        self._running = False

    def _ledger(self, scope: str) -> Deque[CostRecord]:
        ledger = self._records.get(scope)
        if ledger is None:
            limit = self.history_limit * 10 if scope == GLOBAL_SCOPE else self.history_limit
            ledger = deque(maxlen=limit)
            self._records[scope] = ledger
        return ledger

    def _prune(self, ledger: Deque[CostRecord], now: float):
        cutoff = now - self.retention_seconds
        while ledger and ledger[0].timestamp < cutoff:
            ledger.popleft()

    async def record_usage(
        self,
        scope: str,
        model: str,
        token_usage: TokenUsage,
        operation: str,
        cache_hit: bool = False,
        request_id: Optional[str] = None,
    ) -> CostRecord:
        """Append a cost record for scope (and the global ledger)."""
        now = self._clock()
        cost = 0.0 if cache_hit else calculate_cost(model, token_usage.input, token_usage.output)
        record = CostRecord(
            scope_key=scope,
            cost_cents=cost,
            token_usage=token_usage,
            model=model,
            operation=operation,
            timestamp=now,
            cache_hit=cache_hit,
            request_id=request_id,
        )

        scopes = [scope] if scope == GLOBAL_SCOPE else [scope, GLOBAL_SCOPE]
        for key in scopes:
            async with self._locks[key]:
                ledger = self._ledger(key)
                ledger.append(record)
                self._prune(ledger, now)

        if not cache_hit:
            previous = self._model_cost_ema.get(model)
            self._model_cost_ema[model] = (
                cost if previous is None else MODEL_COST_ALPHA * cost + (1 - MODEL_COST_ALPHA) * previous
            )

        if self.metrics is not None:
            self.metrics.increment_counter(
                "cost_cents_total", cost, labels={"model": model, "capability": operation}
            )
            if not cache_hit:
                self.metrics.increment_counter(
                    "tokens_processed", token_usage.input, labels={"model": model, "direction": "input"}
                )
                self.metrics.increment_counter(
                    "tokens_processed", token_usage.output, labels={"model": model, "direction": "output"}
                )
        if self.event_queue is not None:
            await self.event_queue.add("cost_record", **record.to_dict())

        logger.debug(
            "Usage recorded",
            scope=scope,
            model=model,
            operation=operation,
            cost_cents=round(cost, 6),
            cache_hit=cache_hit,
        )
        return record

    def records(self, scope: str, since: Optional[float] = None) -> List[CostRecord]:
        ledger = self._records.get(scope, ())
        if since is None:
            return list(ledger)
        return [r for r in ledger if r.timestamp >= since]

    def get_metrics(self, scope: str, time_range: Optional[timedelta] = None) -> CostMetrics:
        """Aggregate a scope's records, optionally limited to the trailing time_range."""
        now = self._clock()
        since = now - time_range.total_seconds() if time_range is not None else None
        records = self.records(scope, since)

        metrics = CostMetrics(scope=scope, period_start=since, period_end=now)
        for r in records:
            metrics.total_cost_cents += r.cost_cents
            metrics.total_requests += 1
            metrics.cached_requests += int(r.cache_hit)
            metrics.input_tokens += r.token_usage.input
            metrics.output_tokens += r.token_usage.output
            metrics.cost_by_model[r.model] = metrics.cost_by_model.get(r.model, 0.0) + r.cost_cents
            metrics.requests_by_model[r.model] = metrics.requests_by_model.get(r.model, 0) + 1
            metrics.cost_by_operation[r.operation] = (
                metrics.cost_by_operation.get(r.operation, 0.0) + r.cost_cents
            )
        if records and since is None:
            metrics.period_start = records[0].timestamp
        return metrics

    def recommend(self, scope: str) -> List[OptimizationStrategy]:
        """Heuristic hints derived only from the scope's stored records."""
        summary = self.get_metrics(scope)
        if summary.total_requests == 0:
            return []
        strategies: List[OptimizationStrategy] = []
        total = summary.total_cost_cents

        if summary.total_requests >= 10 and summary.cache_hit_rate < 0.3:
            strategies.append(
                OptimizationStrategy(
                    title="Improve Cache Hit Rate",
                    description=f"Current cache hit rate is {summary.cache_hit_rate * 100:.1f}%. "
                    "Consider lowering the similarity threshold or warming the cache with common prompts.",
                    category="caching",
                    potential_savings_cents=total * 0.2,
                    implementation_effort="low",
                    priority=1,
                )
            )

        billed_models = [m for m, cost in summary.cost_by_model.items() if cost > 0]
        if billed_models and total > 0:
            def unit_rate(m: str) -> float:
                pricing = get_pricing(m)
                return pricing.input_rate + pricing.output_rate

            costliest = max(billed_models, key=unit_rate)
            share = summary.cost_by_model[costliest] / total
            cheapest_rate = min(p.input_rate + p.output_rate for p in MODEL_PRICING.values())
            if share > 0.5 and unit_rate(costliest) > cheapest_rate:
                strategies.append(
                    OptimizationStrategy(
                        title="Optimize Model Selection",
                        description=f"{share * 100:.0f}% of spend comes from {costliest}. "
                        "Route simpler requests to a cheaper model.",
                        category="model_selection",
                        potential_savings_cents=summary.cost_by_model[costliest] * 0.3,
                        implementation_effort="medium",
                        priority=2,
                    )
                )

        if summary.input_tokens > summary.output_tokens * 2 and summary.input_tokens > 0:
            ratio = summary.input_tokens / max(summary.output_tokens, 1)
            strategies.append(
                OptimizationStrategy(
                    title="Trim Prompt Context",
                    description=f"Input tokens are {ratio:.1f}x output tokens. "
                    "Summarize history or shorten system prompts.",
                    category="prompt_size",
                    potential_savings_cents=total * 0.15,
                    implementation_effort="medium",
                    priority=3,
                )
            )

        billed_requests = summary.total_requests - summary.cached_requests
        if billed_requests and summary.total_tokens / billed_requests > 2000:
            strategies.append(
                OptimizationStrategy(
                    title="Reduce Token Usage",
                    description=f"Average usage is {summary.total_tokens / billed_requests:.0f} tokens "
                    "per billed request. Tighten max_tokens limits.",
                    category="token_usage",
                    potential_savings_cents=total * 0.1,
                    implementation_effort="low",
                    priority=3,
                )
            )

        if total > 0 and len(summary.cost_by_operation) > 1:
            operation, op_cost = max(summary.cost_by_operation.items(), key=lambda kv: kv[1])
            if op_cost / total > 0.5:
                strategies.append(
                    OptimizationStrategy(
                        title="Review Dominant Capability",
                        description=f"{operation} accounts for {op_cost / total * 100:.0f}% of spend.",
                        category="capability_mix",
                        potential_savings_cents=op_cost * 0.1,
                        implementation_effort="high",
                        priority=4,
                    )
                )

        strategies.sort(key=lambda s: s.priority)
        return strategies

    def context_for(self, scope: str, user_type: Optional[str] = None) -> OptimizationContext:
        """Tier, trailing-month spend and trailing-hour request volume for a scope."""
        now = self._clock()
        return OptimizationContext(
            tier=resolve_tier(scope, user_type),
            monthly_spend_cents=self.spend(scope, MONTH),
            request_volume=len(self.records(scope, now - HOUR)),
        )

    @staticmethod
    def estimate_request_cost(
        payload: Mapping[str, Any],
        model: str,
        max_tokens: int,
    ) -> float:
        """Upper-bound cost in cents: input at 4 chars per token, output at max_tokens."""
        input_tokens = -(-payload_size(payload) // CHARS_PER_TOKEN)
        return calculate_cost(model, input_tokens, max_tokens)

    def select_cost_effective_model(
        self,
        capability: CapabilityConfig,
        payload: Optional[Mapping[str, Any]] = None,
        max_tokens: Optional[int] = None,
        max_cost_cents: Optional[float] = None,
        providers: Optional[Iterable[str]] = None,
    ) -> Tuple[str, str]:
        """Cheapest (provider, model) able to serve a capability.

        Candidates are the priced models of the capability's default and
        fallback providers, narrowed to ``providers`` when given. Models
        within ``max_cost_cents`` are preferred; ties keep the default model.
        """
        allowed = set(providers) if providers is not None else None
        own_providers = {capability.default_provider, capability.fallback_provider}
        candidates = [(capability.default_provider, capability.default_model)]
        candidates += [
            (p.provider, p.model)
            for p in MODEL_PRICING.values()
            if p.provider in own_providers and p.model != capability.default_model
        ]
        if allowed is not None:
            candidates = [c for c in candidates if c[0] in allowed] or candidates[:1]

        payload = payload or {}
        tokens = max_tokens or capability.max_tokens
        costs = {model: self.estimate_request_cost(payload, model, tokens) for _, model in candidates}
        if max_cost_cents is not None:
            affordable = [c for c in candidates if costs[c[1]] <= max_cost_cents]
            candidates = affordable or candidates
        return min(candidates, key=lambda c: costs[c[1]])

    def optimize_request(
        self,
        request: InferenceRequest,
        capability: CapabilityConfig,
        context: Optional[OptimizationContext] = None,
        providers: Optional[Iterable[str]] = None,
    ) -> OptimizedRequest:
        """Apply the request-level cost rules, highest priority first.

        Free-tier users past their monthly allowance move to the cheapest
        model, high-volume callers get a tighter token cap and oversized
        payloads are compacted. Routing changes come back as overrides; the
        request itself only changes when its payload was compacted.
        """
        context = context or self.context_for(request.user_id)
        max_tokens = request.max_tokens or capability.max_tokens
        model = capability.default_model
        payload: Mapping[str, Any] = request.input_payload
        overrides: Dict[str, Any] = {}
        analysis = CostAnalysis(
            estimated_cost_cents=self.estimate_request_cost(payload, model, max_tokens),
            optimized_cost_cents=0.0,
        )

        if context.tier == "free" and context.monthly_spend_cents > FREE_TIER_MONTHLY_SPEND_CENTS:
            provider, cheaper = self.select_cost_effective_model(
                capability, payload, max_tokens, providers=providers
            )
            if cheaper != model:
                overrides.update(provider=provider, model=cheaper)
                analysis.recommendations.append(f"Switched to {cheaper} for cost savings")
                original_rate = get_pricing(model)
                cheaper_rate = get_pricing(cheaper)
                if cheaper_rate.output_rate < original_rate.output_rate * 0.5:
                    analysis.warnings.append(
                        "Using a significantly cheaper model may affect response quality"
                    )
                model = cheaper

        if context.request_volume > HIGH_VOLUME_REQUESTS_PER_HOUR and max_tokens > HIGH_VOLUME_MAX_TOKENS:
            max_tokens = HIGH_VOLUME_MAX_TOKENS
            overrides["max_tokens"] = max_tokens
            analysis.recommendations.append(f"Reduced token limit to {max_tokens} for high request volume")

        if payload_size(payload) > LARGE_INPUT_CHARS:
            compressed = compress_payload(payload)
            if compressed != payload:
                payload = compressed
                analysis.recommendations.append("Compacted whitespace in a large payload")
                analysis.risk_factors.append("Compaction may change formatting the prompt relies on")

        analysis.optimized_cost_cents = self.estimate_request_cost(payload, model, max_tokens)
        if payload is not request.input_payload:
            request = request.model_copy(update={"input_payload": payload})
        if analysis.recommendations:
            logger.info(
                "Request optimized for cost",
                capability=capability.name,
                tier=context.tier,
                recommendations=analysis.recommendations,
                savings_cents=round(analysis.savings_cents, 6),
            )
        return OptimizedRequest(request=request, overrides=overrides, analysis=analysis)

    def set_budget(
        self,
        scope: str,
        daily_limit_cents: float,
        monthly_limit_cents: Optional[float] = None,
    ) -> Budget:
        """Configure ceilings for a scope."""
        if daily_limit_cents <= 0:
            raise ValueError("daily_limit_cents must be positive")
        budget = Budget(daily_limit_cents, monthly_limit_cents)
        self._budgets[scope] = budget
        logger.info(
            "Budget updated",
            scope=scope,
            daily_limit_cents=daily_limit_cents,
            monthly_limit_cents=monthly_limit_cents,
        )
        return budget

    def get_budget(self, scope: str) -> Optional[Budget]:
        """Explicit budget, else the tier default for user scopes."""
        if scope in self._budgets:
            return self._budgets[scope]
        if scope == GLOBAL_SCOPE:
            return None
        return TIER_BUDGETS.get(resolve_tier(scope), TIER_BUDGETS["free"])

    def spend(self, scope: str, window_seconds: float) -> float:
        since = self._clock() - window_seconds
        return sum(r.cost_cents for r in self.records(scope, since))

    def _evaluate(self, scope: str) -> List[BudgetAlert]:
        budget = self.get_budget(scope)
        if budget is None:
            return []
        now = self._clock()
        alerts = []
        periods = [("daily", DAY, budget.daily_limit_cents)]
        if budget.monthly_limit_cents:
            periods.append(("monthly", MONTH, budget.monthly_limit_cents))
        for period, window, limit in periods:
            spent = self.spend(scope, window)
            if spent > limit:
                severity = AlertSeverity.CRITICAL
            elif spent >= limit * WARNING_THRESHOLD:
                severity = AlertSeverity.WARNING
            else:
                continue
            alerts.append(BudgetAlert(scope, period, severity, spent, limit, timestamp=now))
        return alerts

    async def check_budget(self, scope: str) -> List[BudgetAlert]:
        """Current alerts for scope. Advisory only; never blocks."""
        alerts = self._evaluate(scope)
        active = {alert.period: alert for alert in alerts}
        for period in ("daily", "monthly"):
            key = (scope, period)
            alert = active.get(period)
            if alert is None:
                self._alert_levels.pop(key, None)
                continue
            if self._alert_levels.get(key) == alert.severity:
                continue
            self._alert_levels[key] = alert.severity
            logger.warning("Budget alert", **alert.to_dict())
            if self.metrics is not None:
                self.metrics.increment_counter(
                    "budget_alerts", labels={"severity": alert.severity.value, "period": period}
                )
            if self.event_queue is not None:
                await self.event_queue.add("budget_alert", **alert.to_dict())
        return alerts

    def enforce_budget(self, scope: str):
        """Raise BudgetExceeded when hard-blocking is enabled and a ceiling is spent."""
        if not self.hard_block:
            return
        budget = self.get_budget(scope)
        if budget is None:
            return
        periods = [("daily", DAY, budget.daily_limit_cents)]
        if budget.monthly_limit_cents:
            periods.append(("monthly", MONTH, budget.monthly_limit_cents))
        for period, window, limit in periods:
            spent = self.spend(scope, window)
            if spent >= limit:
                raise BudgetExceeded(
                    f"{period.capitalize()} budget exhausted for {scope}",
                    scope=scope,
                    spent_cents=spent,
                    limit_cents=limit,
                )

    def get_spending_analysis(self, scope: str, days: int = 7) -> Dict[str, Any]:
        """Breakdowns, daily trend and a monthly projection for a scope."""
        now = self._clock()
        summary = self.get_metrics(scope)
        today = datetime.utcfromtimestamp(now).date()

        daily: Dict[str, float] = {
            (today - timedelta(days=offset)).isoformat(): 0.0 for offset in range(days - 1, -1, -1)
        }
        for r in self.records(scope, now - days * DAY):
            day = datetime.utcfromtimestamp(r.timestamp).date().isoformat()
            if day in daily:
                daily[day] += r.cost_cents

        values = list(daily.values())
        average_daily = sum(values) / len(values) if values else 0.0
        half = len(values) // 2
        earlier = sum(values[:half]) / half if half else 0.0
        recent = sum(values[half:]) / (len(values) - half) if values else 0.0
        if recent > earlier * 1.2 and recent > 0:
            trend = "increasing"
        elif recent < earlier * 0.8:
            trend = "decreasing"
        else:
            trend = "stable"

        return {
            "scope": scope,
            "summary": summary.to_dict(),
            "daily_costs": [{"date": d, "cost_cents": round(c, 6)} for d, c in daily.items()],
            "average_daily_cost_cents": round(average_daily, 6),
            "projected_monthly_cost_cents": round(average_daily * 30, 6),
            "trend": trend,
            "recommendations": [s.to_dict() for s in self.recommend(scope)],
        }

    def get_model_cost_averages(self) -> Dict[str, float]:
        """Exponential moving average of per-call cost by model."""
        return dict(self._model_cost_ema)

    def scopes(self) -> List[str]:
        return sorted(set(self._records) | set(self._budgets))

    async def start(self):
        """Start the periodic budget check."""
        if self._running:
            return
        self._running = True
        self._check_task = asyncio.create_task(self._budget_check_loop())

    async def stop(self):
        self._running = False
        if self._check_task:
            self._check_task.cancel()
            try:
                await self._check_task
            except asyncio.CancelledError:
                pass
            self._check_task = None

    async def _budget_check_loop(self):
        while self._running:
            await asyncio.sleep(self.check_interval)
            for scope in self.scopes():
                await self.check_budget(scope)
