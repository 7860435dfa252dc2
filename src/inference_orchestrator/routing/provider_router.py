"""Capability-aware provider routing with retry, timeout and failover."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog

from inference_orchestrator.exceptions import ProviderUnavailable
from inference_orchestrator.finops.pricing import MODEL_PRICING, calculate_cost
from inference_orchestrator.providers.base import (
    BaseProvider,
    ProviderError,
    ProviderResult,
    ProviderTimeoutError,
)
from inference_orchestrator.routing.capabilities import (
    CAPABILITIES,
    CapabilityConfig,
    VariantConfig,
    render_prompt,
)
from inference_orchestrator.routing.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)
from inference_orchestrator.routing.retry_handler import RetryHandler
from inference_orchestrator.schemas.inference import TokenUsage
from inference_orchestrator.telemetry.event_sink import EventQueue
from inference_orchestrator.telemetry.metrics import MetricsCollector

logger = structlog.get_logger()


@dataclass(frozen=True)
class Route:
    """A concrete provider/model/prompt triple plus generation parameters."""

    provider: str
    model: str
    prompt_template: Optional[str]
    system_prompt: Optional[str]
    max_tokens: int
    temperature: float


@dataclass
class AttemptRecord:
    """Outcome of one provider call, successful or not."""

    provider: str
    model: str
    success: bool
    latency_ms: float
    input_tokens: int = 0
    output_tokens: int = 0
    error_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def cost_cents(self) -> float:
        return calculate_cost(self.model, self.input_tokens, self.output_tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "success": self.success,
            "latency_ms": round(self.latency_ms, 3),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "error_code": self.error_code,
            "error": self.error,
        }


@dataclass
class RouterResult:
    """Successful routing outcome with every attempt that led to it."""

    content: str
    provider: str
    model: str
    route: Route
    token_usage: TokenUsage
    latency_ms: float
    confidence: float
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def fallback_used(self) -> bool:
        return len({(a.provider, a.model) for a in self.attempts}) > 1

    @property
    def billed_usage(self) -> TokenUsage:
        """Tokens across all attempts, including failed ones that reported usage."""
        return TokenUsage.from_counts(
            sum(a.input_tokens for a in self.attempts),
            sum(a.output_tokens for a in self.attempts),
        )


def calculate_confidence(content: str) -> float:
    """Length-based confidence heuristic."""
    confidence = 0.8
    if len(content) > 500:
        confidence += 0.05
    if len(content) > 1000:
        confidence += 0.05
    return min(confidence, 1.0)


def provider_for_model(model: str, default: str) -> str:
    pricing = MODEL_PRICING.get(model)
    if pricing is not None:
        return pricing.provider
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith("gpt"):
        return "openai"
    return default


class ProviderRouter:
    """Resolves a route per capability and executes it against registered providers."""

    def __init__(
        self,
        providers: Mapping[str, BaseProvider],
        capabilities: Optional[Mapping[str, CapabilityConfig]] = None,
        max_concurrent_requests: int = 16,
        timeout_seconds: float = 30.0,
        enable_fallback: bool = True,
        retry_delay_scale: float = 1.0,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        event_queue: Optional[EventQueue] = None,
    ):
        self.providers: Dict[str, BaseProvider] = dict(providers)
        self.capabilities: Dict[str, CapabilityConfig] = dict(capabilities or CAPABILITIES)
        self.timeout_seconds = timeout_seconds
        self.enable_fallback = enable_fallback
        self.retry_delay_scale = retry_delay_scale
        self.metrics = metrics
        self.event_queue = event_queue
        self.max_concurrent_requests = max_concurrent_requests
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._circuit_config = circuit_config or CircuitBreakerConfig()
        self._breakers: Dict[str, CircuitBreaker] = {}
        self.in_flight = 0

    def add_provider(self, name: str, provider: BaseProvider):
        self.providers[name] = provider
        logger.info("Provider added", provider=name)

    def breaker(self, provider_name: str) -> CircuitBreaker:
        if provider_name not in self._breakers:
            self._breakers[provider_name] = CircuitBreaker(provider_name, self._circuit_config)
        return self._breakers[provider_name]

    def resolve_routes(
        self,
        capability: str,
        variant_config: Optional[VariantConfig] = None,
    ) -> List[Route]:
        """Primary route from capability defaults plus variant overrides, then fallback."""
        config = self.capabilities.get(capability)
        if config is None:
            raise ProviderUnavailable(
                f"No routing configured for capability '{capability}'",
                capability=capability,
                retryable=False,
            )
        variant = variant_config or VariantConfig()

        model = variant.model or config.default_model
        provider = variant.provider or (
            config.default_provider if model == config.default_model
            else provider_for_model(model, config.default_provider)
        )
        template = variant.prompt_template or config.prompt_template
        system_prompt = variant.system_prompt or config.system_prompt
        max_tokens = variant.max_tokens or config.max_tokens
        temperature = variant.temperature if variant.temperature is not None else config.temperature

        routes = [Route(provider, model, template, system_prompt, max_tokens, temperature)]
        if self.enable_fallback and config.fallback_model:
            fallback_provider = config.fallback_provider or provider_for_model(
                config.fallback_model, provider
            )
            if (fallback_provider, config.fallback_model) != (provider, model):
                routes.append(
                    Route(
                        fallback_provider,
                        config.fallback_model,
                        template,
                        system_prompt,
                        max_tokens,
                        temperature,
                    )
                )
        return routes

    async def _attempt(
        self,
        route: Route,
        prompt_text: str,
        attempts: List[AttemptRecord],
    ) -> ProviderResult:
        provider = self.providers[route.provider]
        start = time.perf_counter()
        try:
            async with self._semaphore:
                self.in_flight += 1
                try:
                    result = await self.breaker(route.provider).call(
                        self._send_with_timeout,
                        provider,
                        route,
                        prompt_text,
                    )
                finally:
                    self.in_flight -= 1
        except ProviderError as e:
            latency_ms = (time.perf_counter() - start) * 1000
            attempts.append(
                AttemptRecord(
                    route.provider,
                    route.model,
                    False,
                    latency_ms,
                    error_code=e.error_code,
                    error=e.message,
                )
            )
            await self._observe(attempts[-1], retryable=e.retryable)
            raise

        attempts.append(
            AttemptRecord(
                route.provider,
                route.model,
                True,
                result.latency_ms or (time.perf_counter() - start) * 1000,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            )
        )
        await self._observe(attempts[-1])
        return result

    async def _send_with_timeout(
        self, provider: BaseProvider, route: Route, prompt_text: str
    ) -> ProviderResult:
        try:
            return await asyncio.wait_for(
                provider.send(
                    prompt_text,
                    route.system_prompt,
                    route.model,
                    route.max_tokens,
                    route.temperature,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{route.provider} call exceeded {self.timeout_seconds}s", provider=route.provider
            ) from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Unexpected provider failure: {e}", provider=route.provider) from e

    async def _observe(self, attempt: AttemptRecord, retryable: bool = False):
        if self.metrics is not None:
            status = "success" if attempt.success else "error"
            self.metrics.increment_counter(
                "provider_attempts",
                labels={"provider": attempt.provider, "model": attempt.model, "status": status},
            )
            self.metrics.observe_histogram(
                "provider_latency",
                attempt.latency_ms / 1000,
                labels={"provider": attempt.provider, "model": attempt.model},
            )
            if not attempt.success:
                self.metrics.increment_counter(
                    "provider_errors",
                    labels={
                        "provider": attempt.provider,
                        "error_code": attempt.error_code or "UNKNOWN_ERROR",
                        "retryable": str(retryable).lower(),
                    },
                )
        if self.event_queue is not None:
            event_type = "provider_attempt" if attempt.success else "provider_error"
            await self.event_queue.add(event_type, **attempt.to_dict())

    async def execute(
        self,
        capability: str,
        prompt_inputs: Mapping[str, Any],
        variant_config: Optional[VariantConfig] = None,
    ) -> RouterResult:
        """Serve a capability, retrying and failing over before giving up.

        Raises:
            ProviderUnavailable: after a non-retryable failure or once every route
                has exhausted its retries. ``attempts`` lists each call made.
        """
        config = self.capabilities.get(capability)
        routes = self.resolve_routes(capability, variant_config)
        attempts: List[AttemptRecord] = []
        last_error: Optional[ProviderError] = None
        start = time.perf_counter()

        for index, route in enumerate(routes):
            if route.provider not in self.providers:
                logger.warning("Provider not registered", provider=route.provider, capability=capability)
                continue

            prompt_text = render_prompt(route.prompt_template, prompt_inputs)
            handler = RetryHandler.from_policy(config.retry, self.retry_delay_scale)

            def on_retry(error: BaseException, number: int, route: Route = route):
                logger.warning(
                    "Retrying provider call",
                    provider=route.provider,
                    model=route.model,
                    attempt=number,
                    error=str(error),
                )

            try:
                logger.info(
                    "Routing request",
                    capability=capability,
                    provider=route.provider,
                    model=route.model,
                    fallback=index > 0,
                )
                result = await handler.execute(
                    self._attempt, route, prompt_text, attempts, on_retry=on_retry
                )
            except CircuitOpenError as e:
                last_error = e
                logger.warning("Circuit open, failing over", provider=route.provider)
                continue
            except ProviderError as e:
                last_error = e
                if not e.retryable:
                    logger.error(
                        "Non-retryable provider failure",
                        provider=route.provider,
                        model=route.model,
                        error_code=e.error_code,
                    )
                    raise ProviderUnavailable(
                        f"{route.provider} rejected the request: {e.message}",
                        capability=capability,
                        retryable=False,
                        attempts=[a.to_dict() for a in attempts],
                        details={"error_code": e.error_code},
                    ) from e
                logger.warning(
                    "Provider exhausted retries",
                    provider=route.provider,
                    model=route.model,
                    error=e.message,
                )
                continue

            return RouterResult(
                content=result.content,
                provider=route.provider,
                model=route.model,
                route=route,
                token_usage=TokenUsage.from_counts(result.input_tokens, result.output_tokens),
                latency_ms=(time.perf_counter() - start) * 1000,
                confidence=calculate_confidence(result.content),
                attempts=attempts,
            )

        message = f"All providers failed for capability '{capability}'"
        if last_error is not None:
            message = f"{message}: {last_error.message}"
        raise ProviderUnavailable(
            message,
            capability=capability,
            retryable=True,
            attempts=[a.to_dict() for a in attempts],
        ) from last_error

    async def get_status(self) -> Dict[str, Any]:
        statuses = {}
        for name, provider in self.providers.items():
            statuses[name] = {
                "healthy": await provider.health_check(),
                "status": provider.status.value,
                "success_rate": round(provider.metrics.success_rate, 4),
                "average_latency_ms": round(provider.metrics.average_latency, 2),
                "circuit": self.breaker(name).to_dict(),
            }
        return {
            "providers": statuses,
            "max_concurrent_requests": self.max_concurrent_requests,
            "in_flight": self.in_flight,
            "fallback_enabled": self.enable_fallback,
        }
