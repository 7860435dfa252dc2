"""Experiment and feature-flag definitions."""

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import orjson
from pydantic import BaseModel, Field

from inference_orchestrator.routing.capabilities import VariantConfig, template_errors
from inference_orchestrator.schemas.inference import UserContext

FLAG_ID_PATTERN = re.compile(r"^[a-z0-9_]+$")
ALLOCATION_TOLERANCE = 0.01


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentStatus(str, Enum):
    """Lifecycle states; only RUNNING experiments assign users."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


class RuleType(str, Enum):
    USER_TYPE = "user_type"
    DEVICE_TYPE = "device_type"
    CUSTOM = "custom"


class RuleOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"


class AudienceRule(BaseModel):
    """Targeting predicate evaluated against a UserContext."""

    type: RuleType
    operator: RuleOperator = RuleOperator.EQUALS
    value: Any = None
    attribute: Optional[str] = Field(None, description="Attribute name for custom rules")

    def _actual(self, context: UserContext) -> Any:
        if self.type == RuleType.USER_TYPE:
            return context.user_type
        if self.type == RuleType.DEVICE_TYPE:
            return context.device_type
        return context.attributes.get(self.attribute or "")

    def matches(self, context: UserContext) -> bool:
        actual = self._actual(context)
        expected = self.value
        if self.operator == RuleOperator.EQUALS:
            return actual == expected
        if self.operator == RuleOperator.NOT_EQUALS:
            return actual != expected
        values = expected if isinstance(expected, (list, tuple, set)) else [expected]
        if self.operator == RuleOperator.IN:
            return actual in values
        return actual not in values


def matches_audience(rules: List[AudienceRule], context: UserContext) -> bool:
    return all(rule.matches(context) for rule in rules)


class Variant(BaseModel):
    """One arm of an experiment; config overrides capability routing."""

    id: str
    name: str = ""
    allocation_percent: float
    is_control: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def variant_config(self) -> VariantConfig:
        return VariantConfig.from_mapping(self.config)


class Experiment(BaseModel):
    """A/B experiment definition."""

    id: str
    name: str = ""
    description: str = ""
    capability: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: List[Variant] = Field(default_factory=list)
    traffic_allocation_percent: float = 100.0
    audience_rules: List[AudienceRule] = Field(default_factory=list)
    min_sample_size: int = 100
    confidence_level: float = 0.95
    primary_metric: str = "conversion"
    secondary_metrics: List[str] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_running(self) -> bool:
        return self.status == ExperimentStatus.RUNNING

    @property
    def control(self) -> Optional[Variant]:
        return next((v for v in self.variants if v.is_control), None)

    @property
    def metrics(self) -> List[str]:
        return [self.primary_metric] + [m for m in self.secondary_metrics if m != self.primary_metric]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        return next((v for v in self.variants if v.id == variant_id), None)


class Assignment(BaseModel):
    """Persisted, sticky user-to-variant mapping."""

    user_id: str
    experiment_id: str
    variant_id: str
    assigned_at: datetime = Field(default_factory=_utcnow)


class FeatureFlag(BaseModel):
    """Gradual-rollout flag. environment=None applies everywhere."""

    id: str
    name: str = ""
    description: str = ""
    enabled: bool = False
    rollout_percent: float = 0.0
    environment: Optional[str] = None
    targeting_rules: List[AudienceRule] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)


def validate_experiment(experiment: Experiment) -> List[str]:
    """Return every violation; an empty list means the definition is valid."""
    errors: List[str] = []

    if not experiment.name.strip():
        errors.append("Experiment name is required")
    if len(experiment.variants) < 2:
        errors.append("At least 2 variants are required")

    total = sum(v.allocation_percent for v in experiment.variants)
    if abs(total - 100.0) > ALLOCATION_TOLERANCE:
        errors.append(f"Variant allocations must sum to 100% (allocations sum to {total:g}%)")
    if any(v.allocation_percent < 0 for v in experiment.variants):
        errors.append("Variant allocations must not be negative")

    ids = [v.id for v in experiment.variants]
    if len(set(ids)) != len(ids):
        errors.append("Variant ids must be unique")

    if sum(1 for v in experiment.variants if v.is_control) != 1:
        errors.append("Exactly one variant must be marked as control")

    if not 1 <= experiment.traffic_allocation_percent <= 100:
        errors.append("Traffic allocation must be between 1 and 100")
    if experiment.min_sample_size < 100:
        errors.append("Minimum sample size must be at least 100")
    if not 0 < experiment.confidence_level < 1:
        errors.append("Confidence level must be between 0 and 1")

    for variant in experiment.variants:
        try:
            variant.variant_config
        except ValueError as e:
            errors.append(f"Variant '{variant.id}' has invalid config: {e}")
            continue
        template = variant.config.get("prompt_template")
        if isinstance(template, str):
            errors.extend(
                f"Variant '{variant.id}' prompt_template is invalid: {problem}"
                for problem in template_errors(template)
            )

    return errors


def validate_flag(flag: FeatureFlag) -> List[str]:
    errors: List[str] = []
    if not flag.id:
        errors.append("Flag id is required")
    elif not FLAG_ID_PATTERN.match(flag.id):
        errors.append("Flag id must contain only lowercase letters, digits and underscores")
    if not 0 <= flag.rollout_percent <= 100:
        errors.append("Rollout percent must be between 0 and 100")
    return errors


def load_definitions(
    source: Union[str, Path, Dict[str, Any]],
) -> Tuple[List[Experiment], List[FeatureFlag]]:
    """Parse a JSON document of the form {"experiments": [...], "flags": [...]}.

    Definitions are parsed but not validated; run validate_experiment and
    validate_flag (or register them with an engine) for that.
    """
    if isinstance(source, dict):
        data = source
    else:
        data = orjson.loads(Path(source).read_bytes())

    experiments = [Experiment.model_validate(item) for item in data.get("experiments", [])]
    flags = [FeatureFlag.model_validate(item) for item in data.get("flags", [])]
    return experiments, flags
