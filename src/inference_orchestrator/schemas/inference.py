"""Request/response models shared by every orchestration component."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Priority(str, Enum):
    """Request priority, used to scale per-user rate limits."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TokenUsage(BaseModel):
    """Token accounting for a single provider call."""

    input: int = Field(0, ge=0, description="Prompt tokens")
    output: int = Field(0, ge=0, description="Completion tokens")
    total: int = Field(0, ge=0, description="Total tokens")

    @classmethod
    def from_counts(cls, input_tokens: int, output_tokens: int) -> "TokenUsage":
        return cls(input=input_tokens, output=output_tokens, total=input_tokens + output_tokens)


class UserContext(BaseModel):
    """Caller-supplied targeting context. Treated as opaque hash input."""

    user_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    device_type: Optional[str] = Field(None, description="mobile, tablet, desktop")
    user_type: Optional[str] = Field(None, description="free, premium, enterprise")
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class InferenceRequest(BaseModel):
    """A typed request for one capability. Immutable once created."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., min_length=1)
    capability: str = Field(..., min_length=1)
    input_payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    max_tokens: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "user_id": "user_123",
                "capability": "communication_advisor",
                "input_payload": {"prompt": "How do I listen better?"},
                "priority": "medium",
            }
        },
    )

    def prompt_text(self) -> str:
        """Flatten the payload into the text used for fingerprinting."""
        if "prompt" in self.input_payload:
            return str(self.input_payload["prompt"])
        return " ".join(str(self.input_payload[key]) for key in sorted(self.input_payload))


class InferenceResponse(BaseModel):
    """Normalized response returned to the caller."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str
    content: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_cents: float = Field(0.0, ge=0.0)
    provider: str
    model: str
    cache_hit: bool = False
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    processing_time_ms: float = Field(0.0, ge=0.0)
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
