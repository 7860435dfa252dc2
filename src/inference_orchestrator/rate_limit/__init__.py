"""Rate limiting"""
from .rate_limiter import (
    RateLimitDecision,
    RateLimiter,
    RateLimiterConfig,
    RateLimitRule,
    RateLimitState,
    RateLimitStrategy,
    resolve_tier,
)

__all__ = [
    "RateLimitDecision",
    "RateLimiter",
    "RateLimiterConfig",
    "RateLimitRule",
    "RateLimitState",
    "RateLimitStrategy",
    "resolve_tier",
]
