"""Orchestrator façade for capability invocations."""

from inference_orchestrator.orchestrator.orchestrator import (
    FALLBACK_CONTENT,
    InvocationResult,
    Orchestrator,
    RequestState,
)

__all__ = ["FALLBACK_CONTENT", "InvocationResult", "Orchestrator", "RequestState"]
