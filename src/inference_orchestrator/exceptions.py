"""Custom exceptions for the inference orchestrator."""

from typing import Any, Dict, List, Optional


class OrchestratorException(Exception):
    """Base exception for the inference orchestrator."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class RateLimited(OrchestratorException):
    """Request rejected by the rate limiter; callers must wait until reset_at."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        reset_at: float = 0.0,
        remaining: int = 0,
        limit_name: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="RATE_LIMIT_EXCEEDED", **kwargs)
        self.reset_at = reset_at
        self.remaining = remaining
        self.limit_name = limit_name
        self.details.update({"reset_at": reset_at, "remaining": remaining, "limit": limit_name})


class ProviderUnavailable(OrchestratorException):
    """All provider attempts for a capability failed."""

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        retryable: bool = True,
        attempts: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="PROVIDER_UNAVAILABLE", **kwargs)
        self.capability = capability
        self.retryable = retryable
        self.attempts = attempts or []
        self.details.update({"capability": capability, "retryable": retryable})


class BudgetExceeded(OrchestratorException):
    """Scope spend is above its ceiling and hard-blocking is enabled."""

    def __init__(self, message: str, scope: str, spent_cents: float, limit_cents: float, **kwargs):
        super().__init__(message, error_code="BUDGET_EXCEEDED", **kwargs)
        self.scope = scope
        self.spent_cents = spent_cents
        self.limit_cents = limit_cents
        self.details.update(
            {"scope": scope, "spent_cents": spent_cents, "limit_cents": limit_cents}
        )


class InvalidConfiguration(OrchestratorException):
    """Experiment or flag definition violates its invariants."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message, error_code="VALIDATION_FAILED", **kwargs)
        self.details["errors"] = self.errors


class CacheCorruption(OrchestratorException):
    """A stored cache entry could not be decoded."""

    def __init__(self, message: str = "Cache entry is corrupt", key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CACHE_ERROR", **kwargs)
        self.key = key
        if key:
            self.details["key"] = key


__all__ = [
    "OrchestratorException",
    "RateLimited",
    "ProviderUnavailable",
    "BudgetExceeded",
    "InvalidConfiguration",
    "CacheCorruption",
]
