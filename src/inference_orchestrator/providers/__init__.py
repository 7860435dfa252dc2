"""Model vendor adapters."""

from .anthropic_provider import AnthropicProvider
from .base import (
    AuthenticationError,
    BaseProvider,
    InsufficientCreditsError,
    InvalidRequestError,
    ModelOverloadedError,
    ProviderError,
    ProviderRateLimitError,
    ProviderResult,
    ProviderStatus,
    ProviderTimeoutError,
    ProviderUnavailableError,
    classify_status,
)
from .mock_provider import MockProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "AuthenticationError",
    "BaseProvider",
    "InsufficientCreditsError",
    "InvalidRequestError",
    "MockProvider",
    "ModelOverloadedError",
    "OpenAIProvider",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderResult",
    "ProviderStatus",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "classify_status",
]
