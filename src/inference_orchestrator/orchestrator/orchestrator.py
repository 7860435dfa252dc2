"""Request orchestrator composing rate limiting, experiments, caching, routing and cost tracking."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import structlog

from inference_orchestrator.cache.semantic_cache import SemanticCache
from inference_orchestrator.config import Settings, get_settings
from inference_orchestrator.exceptions import (
    BudgetExceeded,
    OrchestratorException,
    RateLimited,
)
from inference_orchestrator.experiments.engine import ExperimentEngine
from inference_orchestrator.experiments.models import ExperimentStatus
from inference_orchestrator.finops.cost_optimizer import GLOBAL_SCOPE, CostOptimizer
from inference_orchestrator.providers.anthropic_provider import AnthropicProvider
from inference_orchestrator.providers.base import BaseProvider
from inference_orchestrator.providers.openai_provider import OpenAIProvider
from inference_orchestrator.rate_limit.rate_limiter import RateLimiter, RateLimiterConfig, resolve_tier
from inference_orchestrator.routing.capabilities import VariantConfig
from inference_orchestrator.routing.circuit_breaker import CircuitBreakerConfig
from inference_orchestrator.routing.provider_router import ProviderRouter
from inference_orchestrator.schemas.inference import (
    InferenceRequest,
    InferenceResponse,
    TokenUsage,
    UserContext,
)
from inference_orchestrator.storage.base import KeyValueStore
from inference_orchestrator.storage.memory import InMemoryStore
from inference_orchestrator.storage.redis_store import RedisStore
from inference_orchestrator.telemetry.event_sink import EventQueue, EventSink, LoggingEventSink
from inference_orchestrator.telemetry.logger import RequestContext
from inference_orchestrator.telemetry.metrics import MetricsCollector

logger = structlog.get_logger()

FALLBACK_CONTENT = (
    "I'm having trouble generating a response right now. Please try again in a moment."
)


class RequestState(str, Enum):
    """Lifecycle of a single invocation."""

    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    VARIANT_ASSIGNED = "variant_assigned"
    CACHE_CHECKED = "cache_checked"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    PROVIDER_CALLED = "provider_called"
    COST_RECORDED = "cost_recorded"
    CACHE_WRITTEN = "cache_written"
    RESPONDED = "responded"
    FAILED = "failed"


@dataclass
class InvocationResult:
    """Final state, the response served and every state passed through.

    FAILED results still carry a response: the generic fallback.
    """

    state: RequestState
    response: Optional[InferenceResponse]
    error: Optional[OrchestratorException] = None
    transitions: List[RequestState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RequestState.RESPONDED

    @property
    def cache_hit(self) -> bool:
        return RequestState.CACHE_HIT in self.transitions


class Orchestrator:
    """Single entry point for capability invocations.

    Every collaborator is constructor-injected; ``from_settings`` wires the
    default graph.
    """

    def __init__(
        self,
        router: ProviderRouter,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[SemanticCache] = None,
        cost_optimizer: Optional[CostOptimizer] = None,
        experiment_engine: Optional[ExperimentEngine] = None,
        event_queue: Optional[EventQueue] = None,
        metrics: Optional[MetricsCollector] = None,
        cache_enabled: bool = True,
        optimize_costs: bool = True,
    ):
        self.router = router
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.cache = cache if cache is not None else SemanticCache(metrics=metrics)
        self.cost_optimizer = (
            cost_optimizer
            if cost_optimizer is not None
            else CostOptimizer(event_queue=event_queue, metrics=metrics)
        )
        self.experiment_engine = (
            experiment_engine
            if experiment_engine is not None
            else ExperimentEngine(event_queue=event_queue, metrics=metrics)
        )
        self.event_queue = event_queue
        self.metrics = metrics
        self.cache_enabled = cache_enabled
        self.optimize_costs = optimize_costs

        self._bindings: Dict[str, str] = {}
        self._state_counts: Dict[str, int] = {}
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        providers: Optional[Mapping[str, BaseProvider]] = None,
        store: Optional[KeyValueStore] = None,
        sink: Optional[EventSink] = None,
    ) -> "Orchestrator":
        settings = settings or get_settings()
        metrics = MetricsCollector(namespace=settings.metrics_namespace)
        event_queue = EventQueue(
            sink if sink is not None else LoggingEventSink(),
            batch_size=settings.event_batch_size,
            flush_interval_ms=settings.event_flush_interval_ms,
            metrics=metrics,
        )
        if store is None:
            store = (
                RedisStore(settings.redis_url, key_prefix=settings.redis_key_prefix)
                if settings.redis_url
                else InMemoryStore()
            )
        if providers is None:
            providers = cls._default_providers(settings)

        router = ProviderRouter(
            providers,
            max_concurrent_requests=settings.max_concurrent_requests,
            timeout_seconds=settings.provider_timeout_seconds,
            enable_fallback=settings.enable_fallback,
            circuit_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout=settings.circuit_recovery_timeout,
            ),
            metrics=metrics,
            event_queue=event_queue,
        )
        return cls(
            router=router,
            rate_limiter=RateLimiter(RateLimiterConfig.from_settings(settings)),
            cache=SemanticCache(
                similarity_threshold=settings.semantic_cache_threshold,
                max_entries=settings.cache_max_entries,
                default_ttl=settings.cache_ttl_seconds,
                dimensions=settings.embedding_dimensions,
                store=store,
                metrics=metrics,
                sweep_interval=settings.cache_sweep_interval,
            ),
            cost_optimizer=CostOptimizer(
                history_limit=settings.cost_history_limit,
                retention_days=settings.cost_retention_days,
                hard_block=settings.budget_hard_block,
                event_queue=event_queue,
                metrics=metrics,
                check_interval=settings.budget_check_interval,
            ),
            experiment_engine=ExperimentEngine(
                store=store,
                event_queue=event_queue,
                metrics=metrics,
                salt=settings.experiment_hash_salt,
                environment=settings.environment,
                flag_cache_ttl=settings.flag_cache_ttl_seconds,
                flag_cache_size=settings.flag_cache_max_entries,
            ),
            event_queue=event_queue,
            metrics=metrics,
            cache_enabled=settings.cache_enabled,
            optimize_costs=settings.cost_optimization_enabled,
        )

    @staticmethod
    def _default_providers(settings: Settings) -> Dict[str, BaseProvider]:
        providers: Dict[str, BaseProvider] = {}
        if settings.openai_api_key:
            providers["openai"] = OpenAIProvider(
                api_key=settings.openai_api_key.get_secret_value(),
                timeout=settings.provider_timeout_seconds,
            )
        if settings.anthropic_api_key:
            providers["anthropic"] = AnthropicProvider(
                api_key=settings.anthropic_api_key.get_secret_value(),
                timeout=settings.provider_timeout_seconds,
            )
        if not providers:
            logger.warning("No provider API keys configured; every request will use the fallback")
        return providers

    def bind_experiment(self, capability: str, experiment_id: Optional[str]):
        """Route a capability's traffic through an experiment (None unbinds)."""
        if experiment_id is None:
            self._bindings.pop(capability, None)
        else:
            self._bindings[capability] = experiment_id
        logger.info("Experiment binding updated", capability=capability, experiment_id=experiment_id)

    def bound_experiment(self, capability: str) -> Optional[str]:
        return self._bindings.get(capability)

    async def invoke(
        self,
        request: InferenceRequest,
        context: Optional[UserContext] = None,
    ) -> InvocationResult:
        """Serve one request.

        Raises:
            RateLimited: the caller must back off until ``reset_at``.
            BudgetExceeded: only when budget hard-blocking is enabled.
        """
        context = context or UserContext(user_id=request.user_id)
        transitions = [RequestState.RECEIVED]
        start = time.perf_counter()

        with RequestContext(request.id, request.user_id, request.capability):
            try:
                await self._admit(request, context)
                transitions.append(RequestState.RATE_CHECKED)

                experiment_id = self._bindings.get(request.capability)
                variant_id = None
                if experiment_id:
                    variant_id = await self.experiment_engine.assign(
                        request.user_id, experiment_id, context
                    )
                transitions.append(RequestState.VARIANT_ASSIGNED)

                cache_variant = self._cache_variant(experiment_id, variant_id)
                cached = (
                    await self.cache.lookup(request, variant=cache_variant) if self.cache_enabled else None
                )
                transitions.append(RequestState.CACHE_CHECKED)

                if cached is not None:
                    transitions.append(RequestState.CACHE_HIT)
                    response = await self._serve_cached(request, cached, experiment_id, variant_id, start)
                else:
                    transitions.append(RequestState.CACHE_MISS)
                    response = await self._serve_fresh(
                        request, context, experiment_id, variant_id, start, transitions
                    )

                if experiment_id and variant_id:
                    await self.experiment_engine.record_exposure(
                        experiment_id,
                        request.user_id,
                        {
                            "capability": request.capability,
                            "cache_hit": response.cache_hit,
                            "provider": response.provider,
                            "latency_ms": response.processing_time_ms,
                            "cost_cents": response.cost_cents,
                            "tokens": response.token_usage.total,
                        },
                    )
                transitions.append(RequestState.RESPONDED)
                await self.cost_optimizer.check_budget(request.user_id)
                self._finish(request, RequestState.RESPONDED, start, response.cache_hit)
                return InvocationResult(RequestState.RESPONDED, response, None, transitions)

            except (RateLimited, BudgetExceeded):
                transitions.append(RequestState.FAILED)
                self._finish(request, RequestState.FAILED, start, False)
                raise
            except OrchestratorException as e:
                return self._fail(request, e, transitions, start)
            except Exception as e:
                logger.exception("Unexpected orchestration failure", error=str(e))
                return self._fail(
                    request,
                    OrchestratorException(str(e), error_code="INTERNAL_ERROR"),
                    transitions,
                    start,
                )

    async def _admit(self, request: InferenceRequest, context: UserContext):
        self.cost_optimizer.enforce_budget(request.user_id)
        self.cost_optimizer.enforce_budget(GLOBAL_SCOPE)
        decision = await self.rate_limiter.check_and_consume(
            request.user_id,
            capability=request.capability,
            tier=resolve_tier(request.user_id, context.user_type),
            priority=request.priority,
        )
        if not decision.allowed:
            if self.metrics is not None:
                self.metrics.increment_counter(
                    "rate_limit_exceeded", labels={"limit": decision.limit_name or "unknown"}
                )
            raise RateLimited(
                f"Rate limit exceeded ({decision.limit_name})",
                reset_at=decision.reset_at,
                remaining=decision.remaining,
                limit_name=decision.limit_name,
            )

    async def _serve_cached(
        self,
        request: InferenceRequest,
        cached: InferenceResponse,
        experiment_id: Optional[str],
        variant_id: Optional[str],
        start: float,
    ) -> InferenceResponse:
        await self.cost_optimizer.record_usage(
            request.user_id,
            cached.model,
            cached.token_usage,
            request.capability,
            cache_hit=True,
            request_id=request.id,
        )
        return InferenceResponse(
            request_id=request.id,
            content=cached.content,
            token_usage=cached.token_usage,
            cost_cents=0.0,
            provider=cached.provider,
            model=cached.model,
            cache_hit=True,
            confidence=cached.confidence,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            experiment_id=experiment_id if variant_id else None,
            variant_id=variant_id,
        )

    async def _serve_fresh(
        self,
        request: InferenceRequest,
        context: UserContext,
        experiment_id: Optional[str],
        variant_id: Optional[str],
        start: float,
        transitions: List[RequestState],
    ) -> InferenceResponse:
        variant_config = self._variant_config(request, experiment_id, variant_id)
        payload = request.input_payload
        capability = self.router.capabilities.get(request.capability)
        if self.optimize_costs and capability is not None:
            optimized = self.cost_optimizer.optimize_request(
                request,
                capability,
                self.cost_optimizer.context_for(request.user_id, context.user_type),
                providers=self.router.providers,
            )
            payload = optimized.request.input_payload
            variant_config = self._apply_cost_overrides(variant_config, optimized.overrides)
        result = await self.router.execute(request.capability, payload, variant_config)
        transitions.append(RequestState.PROVIDER_CALLED)

        usage = result.billed_usage
        record = await self.cost_optimizer.record_usage(
            request.user_id,
            result.model,
            usage,
            request.capability,
            request_id=request.id,
        )
        transitions.append(RequestState.COST_RECORDED)

        response = InferenceResponse(
            request_id=request.id,
            content=result.content,
            token_usage=usage,
            cost_cents=record.cost_cents,
            provider=result.provider,
            model=result.model,
            cache_hit=False,
            confidence=result.confidence,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            experiment_id=experiment_id if variant_id else None,
            variant_id=variant_id,
        )

        if self.cache_enabled:
            ttl = capability.cache_ttl_seconds if capability else None
            try:
                await self.cache.store(
                    request, response, ttl=ttl, variant=self._cache_variant(experiment_id, variant_id)
                )
                transitions.append(RequestState.CACHE_WRITTEN)
            except Exception as e:
                logger.warning("Cache write failed", error=str(e))
        return response

    @staticmethod
    def _cache_variant(experiment_id: Optional[str], variant_id: Optional[str]) -> Optional[str]:
        return f"{experiment_id}:{variant_id}" if experiment_id and variant_id else None

    @staticmethod
    def _apply_cost_overrides(
        config: Optional[VariantConfig], overrides: Dict[str, Any]
    ) -> Optional[VariantConfig]:
        """Merge cost overrides; a model pinned by the experiment variant is kept."""
        if not overrides:
            return config
        merged = dict(overrides)
        if config is not None:
            pinned = config.model_dump(exclude_none=True)
            if "model" in pinned or "provider" in pinned:
                merged.pop("model", None)
                merged.pop("provider", None)
            if "max_tokens" in merged and "max_tokens" in pinned:
                merged["max_tokens"] = min(merged["max_tokens"], pinned["max_tokens"])
            merged = {**pinned, **merged}
        return VariantConfig(**merged)

    def _variant_config(
        self,
        request: InferenceRequest,
        experiment_id: Optional[str],
        variant_id: Optional[str],
    ) -> Optional[VariantConfig]:
        config = None
        if experiment_id and variant_id:
            config = self.experiment_engine.variant_config(experiment_id, variant_id)
        overrides: Dict[str, Any] = {}
        if request.max_tokens is not None:
            overrides["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            overrides["temperature"] = request.temperature
        if overrides:
            config = (config or VariantConfig()).model_copy(update=overrides)
        return config

    def _fail(
        self,
        request: InferenceRequest,
        error: OrchestratorException,
        transitions: List[RequestState],
        start: float,
    ) -> InvocationResult:
        transitions.append(RequestState.FAILED)
        logger.error(
            "Request failed, serving fallback",
            error_code=error.error_code,
            error=error.message,
            last_state=transitions[-2].value,
        )
        response = InferenceResponse(
            request_id=request.id,
            content=FALLBACK_CONTENT,
            provider="fallback",
            model="none",
            confidence=0.0,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
        self._finish(request, RequestState.FAILED, start, False)
        return InvocationResult(RequestState.FAILED, response, error, transitions)

    def _finish(self, request: InferenceRequest, state: RequestState, start: float, cache_hit: bool):
        self._state_counts[state.value] = self._state_counts.get(state.value, 0) + 1
        if self.metrics is not None:
            self.metrics.increment_counter(
                "requests_total", labels={"capability": request.capability, "state": state.value}
            )
            self.metrics.observe_histogram(
                "request_duration",
                time.perf_counter() - start,
                labels={"capability": request.capability, "cache_hit": str(cache_hit).lower()},
            )

    async def start(self):
        """Start every background task."""
        if self._running:
            return
        self._running = True
        await self.rate_limiter.start()
        await self.cache.start()
        await self.cost_optimizer.start()
        if self.event_queue is not None:
            await self.event_queue.start()
        logger.info("Orchestrator started", providers=sorted(self.router.providers))

    async def stop(self):
        """Cancel background tasks and drain pending events."""
        if not self._running:
            return
        self._running = False
        await self.rate_limiter.stop()
        await self.cache.stop()
        await self.cost_optimizer.stop()
        await self.experiment_engine.stop()
        if self.event_queue is not None:
            await self.event_queue.stop()
        logger.info("Orchestrator stopped")

    async def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "requests": dict(self._state_counts),
            "bindings": dict(self._bindings),
            "rate_limiter": self.rate_limiter.get_statistics(),
            "cache": self.cache.get_stats(),
            "cache_efficiency": self.cache.get_efficiency(),
            "experiments": [
                e.id for e in self.experiment_engine.list_experiments(ExperimentStatus.RUNNING)
            ],
            "costs": self.cost_optimizer.get_metrics(GLOBAL_SCOPE).to_dict(),
            "router": await self.router.get_status(),
            "pending_events": len(self.event_queue) if self.event_queue is not None else 0,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
