"""
Base provider abstract class and error taxonomy for model vendors.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ProviderResult(BaseModel):
    """Raw outcome of a single provider call."""

    content: str = Field(..., description="Generated text")
    input_tokens: int = Field(0, ge=0, description="Prompt tokens billed")
    output_tokens: int = Field(0, ge=0, description="Completion tokens billed")
    latency_ms: float = Field(0.0, ge=0.0, description="Wall-clock call latency")
    model: Optional[str] = Field(None, description="Model reported by the vendor")
    finish_reason: Optional[str] = None


class ProviderStatus(str, Enum):
    """Provider status enum."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


class ProviderMetrics(BaseModel):
    """Provider metrics."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_latency: float = Field(default=0.0, description="Average latency in milliseconds")

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests


class ProviderError(Exception):
    """Base exception for provider-related errors."""

    error_code = "UNKNOWN_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict] = None,
        retryable: Optional[bool] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            provider: Provider name
            status_code: HTTP status code if applicable
            details: Additional error details
            retryable: Override the category's default retry decision
        """
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.details = details or {}
        self.retryable = self.default_retryable if retryable is None else retryable
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "provider": self.provider,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class ProviderRateLimitError(ProviderError):
    """Vendor-side rate limit."""

    error_code = "RATE_LIMIT_EXCEEDED"
    default_retryable = True

    def __init__(self, message: str, provider: Optional[str] = None, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, provider=provider, status_code=kwargs.pop("status_code", 429), **kwargs)
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderError):
    """Request timeout error."""

    error_code = "TIMEOUT"
    default_retryable = True


class ProviderUnavailableError(ProviderError):
    """5xx or connection failure."""

    error_code = "PROVIDER_UNAVAILABLE"
    default_retryable = True


class ModelOverloadedError(ProviderError):
    """Vendor reports the model is overloaded."""

    error_code = "MODEL_OVERLOADED"
    default_retryable = True


class AuthenticationError(ProviderError):
    """Authentication/API key error."""

    error_code = "AUTHENTICATION_FAILED"


class InvalidRequestError(ProviderError):
    """Malformed request rejected by the vendor."""

    error_code = "INVALID_INPUT"


class InsufficientCreditsError(ProviderError):
    """Account quota or credits exhausted."""

    error_code = "INSUFFICIENT_CREDITS"


def classify_status(status_code: Optional[int], message: str, provider: Optional[str] = None) -> ProviderError:
    """Map an HTTP status (and message hints) onto the provider error taxonomy."""
    lowered = message.lower()
    if status_code == 429:
        return ProviderRateLimitError(message, provider=provider)
    if status_code == 401 or status_code == 403:
        return AuthenticationError(message, provider=provider, status_code=status_code)
    if status_code == 402 or "quota" in lowered or "credit" in lowered:
        return InsufficientCreditsError(message, provider=provider, status_code=status_code)
    if status_code in (400, 404, 422):
        return InvalidRequestError(message, provider=provider, status_code=status_code)
    if status_code == 503 or status_code == 529 or "overloaded" in lowered:
        return ModelOverloadedError(message, provider=provider, status_code=status_code)
    if status_code == 408 or "timeout" in lowered or "timed out" in lowered:
        return ProviderTimeoutError(message, provider=provider, status_code=status_code)
    if status_code is not None and status_code >= 500:
        return ProviderUnavailableError(message, provider=provider, status_code=status_code)
    return ProviderError(message, provider=provider, status_code=status_code)


class BaseProvider(ABC):
    """Abstract base class for model vendors."""

    SUPPORTED_MODELS: List[str] = []

    def __init__(self, name: Optional[str] = None, timeout: float = 30.0):
        self.name = name or self.__class__.__name__.replace("Provider", "").lower()
        self.timeout = timeout
        self.status = ProviderStatus.HEALTHY
        self.metrics = ProviderMetrics()

    def supports(self, model: str) -> bool:
        if not self.SUPPORTED_MODELS:
            return True
        return any(model.startswith(m) for m in self.SUPPORTED_MODELS)

    @abstractmethod
    async def send(
        self,
        prompt_text: str,
        system_prompt: Optional[str],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderResult:
        """
        Run a single completion.

        Raises:
            ProviderError: with ``retryable`` set according to the failure category
        """

    async def health_check(self) -> bool:
        return self.status != ProviderStatus.UNHEALTHY

    def _record(self, success: bool, latency_ms: float):
        m = self.metrics
        m.total_requests += 1
        if success:
            m.successful_requests += 1
        else:
            m.failed_requests += 1
        m.average_latency += (latency_ms - m.average_latency) / m.total_requests

        if m.total_requests >= 10 and m.success_rate < 0.5:
            self.status = ProviderStatus.UNHEALTHY
        elif m.success_rate < 0.9:
            self.status = ProviderStatus.DEGRADED
        else:
            self.status = ProviderStatus.HEALTHY

    def _log_request(self, model: str, prompt_text: str, **kwargs):
        logger.debug(
            f"{self.name} request: model={model}, prompt_chars={len(prompt_text)}, params={kwargs}"
        )

    def _log_response(self, result: ProviderResult):
        logger.debug(
            f"{self.name} response: tokens={result.input_tokens}+{result.output_tokens}, "
            f"latency={result.latency_ms:.0f}ms"
        )

    def _log_error(self, error: Exception, model: str):
        logger.error(f"{self.name} error for model {model}: {error}")
