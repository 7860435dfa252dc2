"""Provider routing"""
from .capabilities import CAPABILITIES, CapabilityConfig, RetryPolicy, VariantConfig, render_prompt
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError, CircuitState
from .provider_router import AttemptRecord, ProviderRouter, Route, RouterResult
from .retry_handler import RetryHandler

__all__ = [
    "AttemptRecord",
    "CAPABILITIES",
    "CapabilityConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "ProviderRouter",
    "RetryHandler",
    "RetryPolicy",
    "Route",
    "RouterResult",
    "VariantConfig",
    "render_prompt",
]
