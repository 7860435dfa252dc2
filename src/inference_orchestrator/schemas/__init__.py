"""Schema definitions"""
from .inference import InferenceRequest, InferenceResponse, Priority, TokenUsage, UserContext

__all__ = ["InferenceRequest", "InferenceResponse", "Priority", "TokenUsage", "UserContext"]
