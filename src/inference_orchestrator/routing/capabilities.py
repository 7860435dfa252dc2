"""Capability routing table and prompt rendering."""

import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one capability."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    multiplier: float = 2.0


@dataclass(frozen=True)
class CapabilityConfig:
    """Default serving configuration for a capability."""

    name: str
    default_provider: str
    default_model: str
    fallback_provider: Optional[str]
    fallback_model: Optional[str]
    max_tokens: int
    temperature: float
    cache_ttl_seconds: int
    system_prompt: str
    prompt_template: Optional[str] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)


class VariantConfig(BaseModel):
    """Per-variant overrides carried in an experiment definition."""

    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_template: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "VariantConfig":
        if isinstance(data, VariantConfig):
            return data
        return cls.model_validate(dict(data or {}))


SONNET = "claude-3-5-sonnet-20241022"
HAIKU = "claude-3-haiku-20240307"
GPT4O = "gpt-4o"
GPT35 = "gpt-3.5-turbo"

CAPABILITIES: Dict[str, CapabilityConfig] = {
    "assessment_analyst": CapabilityConfig(
        name="assessment_analyst",
        default_provider="anthropic",
        default_model=SONNET,
        fallback_provider="openai",
        fallback_model=GPT4O,
        max_tokens=4000,
        temperature=0.3,
        cache_ttl_seconds=24 * 3600,
        system_prompt=(
            "You are an expert relationship assessment analyst. Analyze user responses to "
            "provide accurate, empathetic insights about their relationship readiness, "
            "communication patterns, and growth opportunities. Always be supportive and focus "
            "on actionable improvements."
        ),
        retry=RetryPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=10000, multiplier=2.0),
    ),
    "learning_coach": CapabilityConfig(
        name="learning_coach",
        default_provider="openai",
        default_model=GPT4O,
        fallback_provider="anthropic",
        fallback_model=SONNET,
        max_tokens=6000,
        temperature=0.5,
        cache_ttl_seconds=12 * 3600,
        system_prompt=(
            "You are a personalized learning coach specializing in relationship development. "
            "Create customized learning paths that match the user's goals, current skill level, "
            "and time constraints. Focus on practical, evidence-based practices that lead to "
            "measurable improvement."
        ),
    ),
    "progress_tracker": CapabilityConfig(
        name="progress_tracker",
        default_provider="anthropic",
        default_model=HAIKU,
        fallback_provider="openai",
        fallback_model=GPT35,
        max_tokens=2000,
        temperature=0.2,
        cache_ttl_seconds=6 * 3600,
        system_prompt=(
            "You are a progress tracking specialist who identifies patterns in user behavior and "
            "growth. Analyze activity data to provide insights about consistency, improvement "
            "trends, and milestone achievement. Always encourage continued engagement."
        ),
        retry=RetryPolicy(max_attempts=2, base_delay_ms=500, max_delay_ms=5000, multiplier=2.0),
    ),
    "insight_generator": CapabilityConfig(
        name="insight_generator",
        default_provider="anthropic",
        default_model=SONNET,
        fallback_provider="openai",
        fallback_model=GPT4O,
        max_tokens=3000,
        temperature=0.7,
        cache_ttl_seconds=4 * 3600,
        system_prompt=(
            "You are a relationship insight generator who provides daily, personalized guidance. "
            "Create relevant, actionable insights based on user context and recent activity. "
            "Your tone should be encouraging, wise, and practical."
        ),
    ),
    "communication_advisor": CapabilityConfig(
        name="communication_advisor",
        default_provider="anthropic",
        default_model=SONNET,
        fallback_provider="openai",
        fallback_model=GPT4O,
        max_tokens=5000,
        temperature=0.4,
        cache_ttl_seconds=8 * 3600,
        system_prompt=(
            "You are an expert communication advisor specializing in conflict resolution and "
            "relationship skills. Provide specific, practical advice for challenging interpersonal "
            "situations. Focus on empathy, clear communication, and collaborative problem-solving."
        ),
    ),
}


class _TemplateValues(dict):
    """Leaves unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key):
        return "{" + key + "}"


def flatten_inputs(prompt_inputs: Mapping[str, Any]) -> str:
    if "prompt" in prompt_inputs:
        return str(prompt_inputs["prompt"])
    return "\n".join(f"{key}: {prompt_inputs[key]}" for key in sorted(prompt_inputs))


def render_prompt(template: Optional[str], prompt_inputs: Mapping[str, Any]) -> str:
    """Fill {placeholders} from prompt_inputs; without a template, flatten the inputs."""
    if not template:
        return flatten_inputs(prompt_inputs)
    return template.format_map(_TemplateValues({k: str(v) for k, v in prompt_inputs.items()}))


def template_errors(template: str) -> List[str]:
    """Problems that would make render_prompt fail or leak object attributes.

    Placeholders must be plain names such as ``{prompt}``; literal braces are
    written ``{{`` and ``}}``.
    """
    try:
        fields = [
            (name, spec, conversion)
            for _, name, spec, conversion in string.Formatter().parse(template)
            if name is not None
        ]
    except ValueError as e:
        return [f"malformed template: {e}"]

    errors = []
    for name, spec, conversion in fields:
        if not name.isidentifier():
            errors.append(
                f"placeholder {{{name}}} is not a plain name (escape literal braces as {{{{ and }}}})"
            )
        elif spec or conversion:
            errors.append(f"placeholder {{{name}}} must not carry a conversion or format spec")
    if not errors:
        try:
            render_prompt(template, {name: "" for name, _, _ in fields})
        except (ValueError, IndexError, KeyError) as e:
            errors.append(f"template cannot be rendered: {e}")
    return errors


def get_capability(name: str) -> CapabilityConfig:
    try:
        return CAPABILITIES[name]
    except KeyError:
        raise KeyError(f"Unknown capability: {name}") from None
