"""Experiment engine: sticky assignment, feature flags and result analysis."""

import asyncio
import time
import zlib
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog

from inference_orchestrator.exceptions import InvalidConfiguration
from inference_orchestrator.experiments.hashing import assignment_bucket, rollout_bucket
from inference_orchestrator.experiments.models import (
    Assignment,
    Experiment,
    ExperimentStatus,
    FeatureFlag,
    matches_audience,
    validate_experiment,
    validate_flag,
)
from inference_orchestrator.experiments.statistics import SignificanceResult, two_proportion_z_test
from inference_orchestrator.routing.capabilities import VariantConfig
from inference_orchestrator.schemas.inference import UserContext
from inference_orchestrator.storage.base import KeyValueStore
from inference_orchestrator.storage.memory import InMemoryStore
from inference_orchestrator.telemetry.event_sink import EventQueue
from inference_orchestrator.telemetry.logger import audit_log
from inference_orchestrator.telemetry.metrics import MetricsCollector

logger = structlog.get_logger()

ASSIGNMENT_EVENT = "experiment_assignment"
EXPOSURE_EVENT = "experiment_exposure"
CONVERSION_EVENT = "experiment_conversion"

LOCK_STRIPES = 64


@dataclass
class VariantStats:
    """In-process tallies for one variant."""

    assigned: Set[str] = field(default_factory=set)
    exposed: Set[str] = field(default_factory=set)
    converted: Dict[str, Set[str]] = field(default_factory=lambda: defaultdict(set))
    values: Dict[str, float] = field(default_factory=lambda: defaultdict(float))
    total_latency_ms: float = 0.0
    total_cost_cents: float = 0.0

    @property
    def sample_size(self) -> int:
        """Exposed users, or assigned users before any exposure was recorded."""
        return len(self.exposed) or len(self.assigned)


class ExperimentEngine:
    """Assigns users to variants deterministically and evaluates feature flags.

    Assignment hashes ``user_id:experiment_id`` plus a salt into 100 buckets.
    The first bucket check gates traffic allocation; the same bucket then
    walks variant allocations cumulatively. Results are persisted with
    set-if-absent so concurrent first assignments converge on one answer.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        event_queue: Optional[EventQueue] = None,
        metrics: Optional[MetricsCollector] = None,
        salt: str = "inference-orchestrator",
        environment: str = "development",
        flag_cache_ttl: float = 900.0,
        flag_cache_size: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else InMemoryStore()
        self.event_queue = event_queue
        self.metrics = metrics
        self.salt = salt
        self.environment = environment
        self.flag_cache_ttl = flag_cache_ttl
        self.flag_cache_size = flag_cache_size
        self._clock = clock

        self._experiments: Dict[str, Experiment] = {}
        self._flags: Dict[str, FeatureFlag] = {}
        self._flag_cache: "OrderedDict[Tuple[Any, ...], Tuple[bool, float]]" = OrderedDict()
        self._flag_evaluations: Dict[str, int] = defaultdict(int)
        self._rollouts: Dict[str, asyncio.Task] = {}
        self._stats: Dict[str, Dict[str, VariantStats]] = defaultdict(lambda: defaultdict(VariantStats))
        self._locks = [asyncio.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(key.encode()) % LOCK_STRIPES]

    @staticmethod
    def _assignment_key(user_id: str, experiment_id: str) -> str:
        return f"assignment:{user_id}:{experiment_id}"

    # Definitions

    def update_experiment(self, experiment: Union[Experiment, Dict[str, Any]]) -> Experiment:
        """Validate and register an experiment definition.

        Existing assignments survive; sticky users keep their variant even
        if allocations change.

        Raises:
            InvalidConfiguration: listing every violation found.
        """
        if not isinstance(experiment, Experiment):
            experiment = Experiment.model_validate(experiment)

        errors = validate_experiment(experiment)
        if errors:
            audit_log("update_experiment", experiment.id, "rejected", {"errors": errors})
            raise InvalidConfiguration(f"Invalid experiment '{experiment.id}'", errors=errors)

        experiment = experiment.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        previous = self._experiments.get(experiment.id)
        self._experiments[experiment.id] = experiment
        audit_log(
            "update_experiment",
            experiment.id,
            "accepted",
            {
                "status": experiment.status.value,
                "variants": [v.id for v in experiment.variants],
                "replaced": previous is not None,
            },
        )
        return experiment

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        return self._experiments.get(experiment_id)

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        return [e for e in self._experiments.values() if status is None or e.status == status]

    def set_status(self, experiment_id: str, status: ExperimentStatus) -> Experiment:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise KeyError(f"Unknown experiment: {experiment_id}")
        updated = experiment.model_copy(update={"status": status, "updated_at": datetime.now(timezone.utc)})
        self._experiments[experiment_id] = updated
        audit_log("set_experiment_status", experiment_id, "accepted", {"status": status.value})
        return updated

    def update_flag(self, flag: Union[FeatureFlag, Dict[str, Any]]) -> FeatureFlag:
        """Validate and register a feature flag, dropping its cached evaluations.

        Raises:
            InvalidConfiguration: listing every violation found.
        """
        if not isinstance(flag, FeatureFlag):
            flag = FeatureFlag.model_validate(flag)

        errors = validate_flag(flag)
        if errors:
            audit_log("update_flag", flag.id or "<missing>", "rejected", {"errors": errors})
            raise InvalidConfiguration(f"Invalid feature flag '{flag.id}'", errors=errors)

        self._flags[flag.id] = flag
        self._drop_cached(flag.id)
        audit_log(
            "update_flag",
            flag.id,
            "accepted",
            {"enabled": flag.enabled, "rollout_percent": flag.rollout_percent},
        )
        return flag

    def get_flag(self, flag_id: str) -> Optional[FeatureFlag]:
        return self._flags.get(flag_id)

    def delete_flag(self, flag_id: str) -> bool:
        flag = self._flags.pop(flag_id, None)
        if flag is None:
            return False
        self._drop_cached(flag_id)
        self._flag_evaluations.pop(flag_id, None)
        self._cancel_rollout(flag_id)
        audit_log("delete_flag", flag_id, "accepted")
        return True

    def _patch_flag(self, flag_id: str, **changes: Any) -> FeatureFlag:
        flag = self._flags.get(flag_id)
        if flag is None:
            raise KeyError(f"Unknown feature flag: {flag_id}")
        changes["updated_at"] = datetime.now(timezone.utc)
        return self.update_flag(flag.model_copy(update=changes))

    def emergency_disable(self, flag_id: str, reason: str) -> FeatureFlag:
        """Switch a flag off for everyone and stop any rollout in progress."""
        self._cancel_rollout(flag_id)
        flag = self._patch_flag(flag_id, enabled=False, rollout_percent=0.0)
        logger.warning("Feature flag emergency disabled", flag_id=flag_id, reason=reason)
        audit_log("emergency_disable", flag_id, "accepted", {"reason": reason})
        return flag

    def emergency_enable(self, flag_id: str, rollout_percent: float = 100.0) -> FeatureFlag:
        self._cancel_rollout(flag_id)
        flag = self._patch_flag(flag_id, enabled=True, rollout_percent=rollout_percent)
        logger.info("Feature flag emergency enabled", flag_id=flag_id, rollout_percent=rollout_percent)
        return flag

    def advance_rollout(self, flag_id: str, target_percent: float, step_percent: float) -> FeatureFlag:
        """Raise a flag's rollout by one step, never past the target."""
        flag = self._flags.get(flag_id)
        if flag is None:
            raise KeyError(f"Unknown feature flag: {flag_id}")
        if flag.rollout_percent >= target_percent:
            return flag
        percent = min(flag.rollout_percent + step_percent, target_percent)
        flag = self._patch_flag(flag_id, enabled=True, rollout_percent=percent)
        logger.info("Feature flag rollout advanced", flag_id=flag_id, rollout_percent=percent)
        return flag

    def gradual_rollout(
        self,
        flag_id: str,
        target_percent: float,
        step_percent: float,
        interval_seconds: float = 86_400.0,
    ) -> asyncio.Task:
        """Start raising a flag's rollout by ``step_percent`` every interval.

        The first step is applied immediately. Starting a new rollout for the
        same flag replaces the previous one; ``stop()``, ``delete_flag`` and
        the emergency switches cancel it.
        """
        if not 0 <= target_percent <= 100:
            raise InvalidConfiguration(
                f"Invalid rollout for '{flag_id}'", errors=["Rollout percent must be between 0 and 100"]
            )
        if step_percent <= 0:
            raise InvalidConfiguration(
                f"Invalid rollout for '{flag_id}'", errors=["Rollout step must be positive"]
            )
        self.advance_rollout(flag_id, target_percent, step_percent)
        self._cancel_rollout(flag_id)
        task = asyncio.create_task(
            self._rollout_loop(flag_id, target_percent, step_percent, interval_seconds)
        )
        self._rollouts[flag_id] = task
        audit_log(
            "gradual_rollout",
            flag_id,
            "accepted",
            {"target_percent": target_percent, "step_percent": step_percent},
        )
        return task

    async def _rollout_loop(self, flag_id: str, target_percent: float, step_percent: float, interval: float):
        while True:
            flag = self._flags.get(flag_id)
            if flag is None or flag.rollout_percent >= target_percent:
                break
            await asyncio.sleep(interval)
            self.advance_rollout(flag_id, target_percent, step_percent)
        logger.info("Feature flag rollout complete", flag_id=flag_id)

    def _cancel_rollout(self, flag_id: str):
        task = self._rollouts.pop(flag_id, None)
        if task is not None:
            task.cancel()

    async def stop(self):
        tasks = list(self._rollouts.values())
        self._rollouts.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def export_flags(self) -> List[Dict[str, Any]]:
        return [flag.model_dump(mode="json") for flag in self._flags.values()]

    def import_flags(self, flags: List[Union[FeatureFlag, Dict[str, Any]]]) -> int:
        """Register every flag, all or nothing. Returns the number imported."""
        parsed = [f if isinstance(f, FeatureFlag) else FeatureFlag.model_validate(f) for f in flags]
        errors = [f"{flag.id or '<missing>'}: {e}" for flag in parsed for e in validate_flag(flag)]
        if errors:
            audit_log("import_flags", "<batch>", "rejected", {"errors": errors})
            raise InvalidConfiguration("Invalid feature flags", errors=errors)
        for flag in parsed:
            self._flags[flag.id] = flag
        self.clear_flag_cache()
        audit_log("import_flags", "<batch>", "accepted", {"flags": [f.id for f in parsed]})
        return len(parsed)

    def get_flag_stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            flag_id: {
                "enabled": flag.enabled,
                "rollout_percent": flag.rollout_percent,
                "evaluations": self._flag_evaluations.get(flag_id, 0),
                "cached_evaluations": sum(1 for key in self._flag_cache if key[0] == flag_id),
                "rollout_in_progress": flag_id in self._rollouts and not self._rollouts[flag_id].done(),
                "updated_at": flag.updated_at.isoformat(),
            }
            for flag_id, flag in self._flags.items()
        }

    # Assignment

    async def assign(
        self,
        user_id: str,
        experiment_id: str,
        context: Optional[UserContext] = None,
    ) -> Optional[str]:
        """Return the user's variant id, or None when not participating."""
        experiment = self._experiments.get(experiment_id)
        if experiment is None or not experiment.is_running:
            return None

        key = self._assignment_key(user_id, experiment_id)
        async with self._lock_for(key):
            existing = await self.store.get(key)
            if existing is not None:
                return existing["variant_id"]

            if experiment.audience_rules:
                if not matches_audience(experiment.audience_rules, context or UserContext(user_id=user_id)):
                    return None

            h = assignment_bucket(user_id, experiment_id, self.salt)
            if h >= experiment.traffic_allocation_percent:
                return None

            variant_id = self._pick_variant(experiment, h)
            assignment = Assignment(user_id=user_id, experiment_id=experiment_id, variant_id=variant_id)
            stored = await self.store.set_if_absent(key, assignment.model_dump(mode="json"))
            if not stored:
                winner = await self.store.get(key)
                if winner is not None:
                    return winner["variant_id"]

        self._stats[experiment_id][variant_id].assigned.add(user_id)
        if self.metrics is not None:
            self.metrics.increment_counter(
                "experiment_assignments",
                labels={"experiment_id": experiment_id, "variant_id": variant_id},
            )
        if self.event_queue is not None:
            await self.event_queue.add(
                ASSIGNMENT_EVENT,
                experiment_id=experiment_id,
                user_id=user_id,
                variant_id=variant_id,
                bucket=h,
            )
        logger.debug("User assigned", experiment_id=experiment_id, variant_id=variant_id)
        return variant_id

    @staticmethod
    def _pick_variant(experiment: Experiment, h: int) -> str:
        cumulative = 0.0
        for variant in experiment.variants:
            cumulative += variant.allocation_percent
            if h < cumulative:
                return variant.id
        # Allocations may sum to 99.99 within tolerance.
        return experiment.variants[-1].id

    async def get_assignment(self, user_id: str, experiment_id: str) -> Optional[Assignment]:
        data = await self.store.get(self._assignment_key(user_id, experiment_id))
        if data is None:
            return None
        return Assignment.model_validate(data)

    def variant_config(self, experiment_id: str, variant_id: Optional[str]) -> Optional[VariantConfig]:
        experiment = self._experiments.get(experiment_id)
        if experiment is None or variant_id is None:
            return None
        variant = experiment.get_variant(variant_id)
        return variant.variant_config if variant else None

    # Feature flags

    def is_feature_enabled(self, flag_id: str, context: UserContext) -> bool:
        self._flag_evaluations[flag_id] += 1
        cache_key = self._flag_cache_key(flag_id, context)
        cached = self._flag_cache.get(cache_key)
        now = self._clock()
        if cached is not None and cached[1] > now:
            self._flag_cache.move_to_end(cache_key)
            return cached[0]

        enabled = self._evaluate_flag(flag_id, context)
        self._flag_cache[cache_key] = (enabled, now + self.flag_cache_ttl)
        self._flag_cache.move_to_end(cache_key)
        while len(self._flag_cache) > self.flag_cache_size:
            self._flag_cache.popitem(last=False)
        return enabled

    def get_flags(self, flag_ids: List[str], context: UserContext) -> Dict[str, bool]:
        return {flag_id: self.is_feature_enabled(flag_id, context) for flag_id in flag_ids}

    def get_all_flags(self, context: UserContext) -> Dict[str, bool]:
        return self.get_flags(list(self._flags), context)

    def _flag_cache_key(self, flag_id: str, context: UserContext) -> Tuple[Any, ...]:
        """Only the fields a flag can read; session ids and other noise stay out."""
        key: Tuple[Any, ...] = (flag_id, context.user_id, context.user_type, context.device_type)
        flag = self._flags.get(flag_id)
        if flag is not None:
            attributes = sorted({r.attribute for r in flag.targeting_rules if r.attribute})
            key += tuple(repr(context.attributes.get(a)) for a in attributes)
        return key

    def _drop_cached(self, flag_id: str):
        for key in [k for k in self._flag_cache if k[0] == flag_id]:
            del self._flag_cache[key]

    def _evaluate_flag(self, flag_id: str, context: UserContext) -> bool:
        flag = self._flags.get(flag_id)
        if flag is None or not flag.enabled:
            return False
        if flag.environment and flag.environment != self.environment:
            return False
        if flag.targeting_rules and not matches_audience(flag.targeting_rules, context):
            return False
        return rollout_bucket(context.user_id, flag_id, self.salt) < flag.rollout_percent

    def clear_flag_cache(self):
        self._flag_cache.clear()

    # Events

    async def record_event(
        self,
        experiment_id: str,
        user_id: str,
        event_type: str,
        metric: Optional[str] = None,
        value: float = 1.0,
        properties: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Attribute an event to the user's variant. Returns False for non-participants."""
        assignment = await self.get_assignment(user_id, experiment_id)
        if assignment is None:
            return False

        stats = self._stats[experiment_id][assignment.variant_id]
        properties = dict(properties or {})
        if event_type == EXPOSURE_EVENT:
            stats.exposed.add(user_id)
            stats.total_latency_ms += float(properties.get("latency_ms", 0.0))
            stats.total_cost_cents += float(properties.get("cost_cents", 0.0))
        elif event_type == CONVERSION_EVENT:
            experiment = self._experiments.get(experiment_id)
            metric = metric or (experiment.primary_metric if experiment else "conversion")
            stats.converted[metric].add(user_id)
            stats.values[metric] += value

        if self.event_queue is not None:
            await self.event_queue.add(
                event_type,
                experiment_id=experiment_id,
                user_id=user_id,
                variant_id=assignment.variant_id,
                metric=metric,
                value=value,
                properties=properties,
            )
        return True

    async def record_exposure(
        self, experiment_id: str, user_id: str, properties: Optional[Dict[str, Any]] = None
    ) -> bool:
        return await self.record_event(experiment_id, user_id, EXPOSURE_EVENT, properties=properties)

    async def record_conversion(
        self,
        experiment_id: str,
        user_id: str,
        metric: Optional[str] = None,
        value: float = 1.0,
    ) -> bool:
        return await self.record_event(experiment_id, user_id, CONVERSION_EVENT, metric=metric, value=value)

    # Analysis

    def compute_significance(self, experiment_id: str) -> Dict[str, Dict[str, SignificanceResult]]:
        """Per metric, compare each non-control variant against control."""
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise KeyError(f"Unknown experiment: {experiment_id}")
        control = experiment.control
        stats = self._stats[experiment_id]
        control_stats = stats[control.id]

        metrics = list(experiment.metrics)
        for variant_stats in list(stats.values()):
            metrics.extend(m for m in variant_stats.converted if m not in metrics)

        results: Dict[str, Dict[str, SignificanceResult]] = {}
        for metric in metrics:
            per_variant = {}
            for variant in experiment.variants:
                if variant.is_control:
                    continue
                variant_stats = stats[variant.id]
                per_variant[variant.id] = two_proportion_z_test(
                    len(control_stats.converted[metric]),
                    control_stats.sample_size,
                    len(variant_stats.converted[metric]),
                    variant_stats.sample_size,
                    confidence_level=experiment.confidence_level,
                    metric=metric,
                    variant_id=variant.id,
                )
            results[metric] = per_variant
        return results

    def get_experiment_results(self, experiment_id: str) -> Dict[str, Any]:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise KeyError(f"Unknown experiment: {experiment_id}")

        stats = self._stats[experiment_id]
        variants = []
        for variant in experiment.variants:
            s = stats[variant.id]
            sample = s.sample_size
            variants.append(
                {
                    "variant_id": variant.id,
                    "name": variant.name,
                    "is_control": variant.is_control,
                    "assigned": len(s.assigned),
                    "exposed": len(s.exposed),
                    "conversions": {m: len(users) for m, users in s.converted.items()},
                    "conversion_rate": (
                        len(s.converted[experiment.primary_metric]) / sample if sample else 0.0
                    ),
                    "avg_latency_ms": s.total_latency_ms / len(s.exposed) if s.exposed else 0.0,
                    "avg_cost_cents": s.total_cost_cents / len(s.exposed) if s.exposed else 0.0,
                    "sufficient_sample": sample >= experiment.min_sample_size,
                }
            )

        significance = self.compute_significance(experiment_id)
        primary = significance.get(experiment.primary_metric, {})
        winners = [
            r for r in primary.values() if r.statistically_significant and r.difference > 0
        ]
        ready = all(v["sufficient_sample"] for v in variants)
        if winners and ready:
            best = max(winners, key=lambda r: r.difference)
            recommendation = f"Variant '{best.variant_id}' outperforms control on {experiment.primary_metric}"
        elif not ready:
            recommendation = "Keep running until every variant reaches the minimum sample size"
        else:
            recommendation = "No significant improvement over control yet"

        return {
            "experiment_id": experiment_id,
            "name": experiment.name,
            "status": experiment.status.value,
            "primary_metric": experiment.primary_metric,
            "variants": variants,
            "significance": {
                metric: {vid: r.to_dict() for vid, r in per_variant.items()}
                for metric, per_variant in significance.items()
            },
            "recommendation": recommendation,
        }
