"""Inference orchestration: rate limiting, semantic caching, cost tracking,
provider routing and experimentation behind one façade."""

__version__ = "1.0.0"

from inference_orchestrator.exceptions import (  # noqa: E402
    BudgetExceeded,
    CacheCorruption,
    InvalidConfiguration,
    OrchestratorException,
    ProviderUnavailable,
    RateLimited,
)
from inference_orchestrator.orchestrator import InvocationResult, Orchestrator, RequestState  # noqa: E402
from inference_orchestrator.schemas import (  # noqa: E402
    InferenceRequest,
    InferenceResponse,
    Priority,
    TokenUsage,
    UserContext,
)


def get_version():
    return __version__


__all__ = [
    "BudgetExceeded",
    "CacheCorruption",
    "InferenceRequest",
    "InferenceResponse",
    "InvalidConfiguration",
    "InvocationResult",
    "Orchestrator",
    "OrchestratorException",
    "Priority",
    "ProviderUnavailable",
    "RateLimited",
    "RequestState",
    "TokenUsage",
    "UserContext",
    "__version__",
    "get_version",
]
