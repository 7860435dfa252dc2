"""Layered admission control for orchestrated requests.

Every request is checked against a global limit, a per-user limit scaled by
tier and priority, and a per-user-per-capability limit. A request is admitted
only when all layers have room, and only then is a slot consumed in each of
them, so a rejection never burns quota elsewhere.
"""

import asyncio
import time
import zlib
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from inference_orchestrator.schemas.inference import Priority

logger = structlog.get_logger()


class RateLimitStrategy(str, Enum):
    """Counting strategies."""

    SLIDING_WINDOW = "sliding_window"
    FIXED_WINDOW = "fixed_window"
    TOKEN_BUCKET = "token_bucket"


PRIORITY_MULTIPLIERS = {
    Priority.LOW: 0.5,
    Priority.MEDIUM: 1.0,
    Priority.HIGH: 1.5,
}


@dataclass
class RateLimitRule:
    """A request budget for one layer."""

    name: str
    limit: int
    window_seconds: float


@dataclass
class RateLimitState:
    """Counter state for one scope key."""

    scope_key: str
    window_start: float = 0.0
    count: int = 0
    timestamps: Deque[float] = field(default_factory=deque)
    tokens: Optional[float] = None
    last_refill: float = 0.0
    last_seen: float = 0.0


@dataclass
class RateLimitDecision:
    """Outcome of an admission check."""

    allowed: bool
    remaining: int
    reset_at: float
    limit: int = 0
    limit_name: Optional[str] = None

    def retry_after(self, now: Optional[float] = None) -> float:
        """Seconds the caller should wait before trying again."""
        return max(0.0, self.reset_at - (now if now is not None else time.time()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "limit": self.limit,
            "limit_name": self.limit_name,
        }


@dataclass
class RateLimiterConfig:
    """Rate limiter configuration."""

    enabled: bool = True
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW
    window_seconds: float = 60.0
    global_limit: int = 100
    per_user_limit: int = 20
    per_capability_limit: int = 30
    tier_limits: Dict[str, int] = field(
        default_factory=lambda: {"premium": 50, "enterprise": 200}
    )
    cleanup_interval: float = 300.0
    idle_seconds: float = 3600.0
    lock_stripes: int = 64

    @classmethod
    def from_settings(cls, settings) -> "RateLimiterConfig":
        return cls(
            enabled=settings.rate_limit_enabled,
            strategy=RateLimitStrategy(settings.rate_limit_strategy),
            window_seconds=settings.rate_limit_window_seconds,
            global_limit=settings.rate_limit_global,
            per_user_limit=settings.rate_limit_per_user,
            per_capability_limit=settings.rate_limit_per_capability,
            tier_limits={
                "premium": settings.rate_limit_premium,
                "enterprise": settings.rate_limit_enterprise,
            },
            cleanup_interval=settings.rate_limit_cleanup_interval,
            idle_seconds=settings.rate_limit_idle_seconds,
        )


def resolve_tier(user_id: str, user_type: Optional[str] = None) -> str:
    """Tier from explicit user type, falling back to the user id prefix."""
    if user_type:
        return user_type.lower()
    if user_id.startswith("enterprise_"):
        return "enterprise"
    if user_id.startswith("premium_"):
        return "premium"
    return "free"


class RateLimiter:
    """Per-scope admission control with striped locks."""

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._states: Dict[str, RateLimitState] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, self.config.lock_stripes))]
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False
        self.rejections: Dict[str, int] = {}

    def _lock_indexes(self, keys: List[str]) -> List[int]:
        stripes = len(self._locks)
        return sorted({zlib.crc32(key.encode("utf-8")) % stripes for key in keys})

    def _rules_for(
        self,
        scope_key: str,
        capability: Optional[str],
        tier: str,
        priority: Priority,
    ) -> List[Tuple[str, RateLimitRule]]:
        cfg = self.config
        user_base = cfg.tier_limits.get(tier, cfg.per_user_limit)
        user_limit = max(1, int(user_base * PRIORITY_MULTIPLIERS.get(priority, 1.0)))

        rules = [
            ("global", RateLimitRule("global", cfg.global_limit, cfg.window_seconds)),
            (f"user:{scope_key}", RateLimitRule("user", user_limit, cfg.window_seconds)),
        ]
        if capability:
            rules.append(
                (
                    f"capability:{scope_key}:{capability}",
                    RateLimitRule("capability", cfg.per_capability_limit, cfg.window_seconds),
                )
            )
        return rules

    def _state(self, key: str) -> RateLimitState:
        state = self._states.get(key)
        if state is None:
            state = RateLimitState(scope_key=key)
            self._states[key] = state
        return state

    def _peek(self, state: RateLimitState, rule: RateLimitRule, now: float) -> Tuple[bool, int, float]:
        """Return (has_room, remaining_after_consume, reset_at) without mutating counts."""
        strategy = self.config.strategy
        window = rule.window_seconds

        if strategy == RateLimitStrategy.SLIDING_WINDOW:
            cutoff = now - window
            while state.timestamps and state.timestamps[0] <= cutoff:
                state.timestamps.popleft()
            used = len(state.timestamps)
            reset_at = (state.timestamps[0] + window) if state.timestamps else now + window
            return used < rule.limit, max(0, rule.limit - used - 1), reset_at

        if strategy == RateLimitStrategy.FIXED_WINDOW:
            window_start = (now // window) * window
            if state.window_start != window_start:
                state.window_start = window_start
                state.count = 0
            return state.count < rule.limit, max(0, rule.limit - state.count - 1), window_start + window

        refill_rate = rule.limit / window
        if state.tokens is None:
            state.tokens = float(rule.limit)
            state.last_refill = now
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(float(rule.limit), state.tokens + elapsed * refill_rate)
        state.last_refill = now
        if state.tokens >= 1.0:
            after = state.tokens - 1.0
            return True, int(after), now + (rule.limit - after) / refill_rate
        return False, 0, now + (1.0 - state.tokens) / refill_rate

    def _consume(self, state: RateLimitState, now: float):
        strategy = self.config.strategy
        if strategy == RateLimitStrategy.SLIDING_WINDOW:
            state.timestamps.append(now)
        elif strategy == RateLimitStrategy.FIXED_WINDOW:
            state.count += 1
        else:
            state.tokens = (state.tokens or 0.0) - 1.0

    async def check_and_consume(
        self,
        scope_key: str,
        capability: Optional[str] = None,
        tier: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> RateLimitDecision:
        """Admit the request if every layer has room, consuming one slot in each."""
        now = self._clock()
        if not self.config.enabled:
            return RateLimitDecision(True, self.config.global_limit, now, self.config.global_limit)

        tier = tier or resolve_tier(scope_key)
        rules = self._rules_for(scope_key, capability, tier, priority)
        keys = [key for key, _ in rules]

        locks = [self._locks[i] for i in self._lock_indexes(keys)]
        for lock in locks:
            await lock.acquire()
        try:
            checks = []
            for key, rule in rules:
                state = self._state(key)
                state.last_seen = now
                has_room, remaining, reset_at = self._peek(state, rule, now)
                if not has_room:
                    self.rejections[rule.name] = self.rejections.get(rule.name, 0) + 1
                    logger.warning(
                        "Rate limit exceeded",
                        scope=scope_key,
                        capability=capability,
                        limit=rule.name,
                        max_requests=rule.limit,
                        reset_in=round(reset_at - now, 3),
                    )
                    return RateLimitDecision(False, 0, reset_at, rule.limit, rule.name)
                checks.append((state, rule, remaining, reset_at))

            for state, _, _, _ in checks:
                self._consume(state, now)

            _, rule, remaining, reset_at = min(checks, key=lambda c: c[2])
            return RateLimitDecision(True, remaining, reset_at, rule.limit, rule.name)
        finally:
            for lock in reversed(locks):
                lock.release()

    async def get_status(
        self,
        scope_key: str,
        capability: Optional[str] = None,
        tier: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> Dict[str, Dict[str, Any]]:
        """Current headroom per layer without consuming anything."""
        now = self._clock()
        tier = tier or resolve_tier(scope_key)
        rules = self._rules_for(scope_key, capability, tier, priority)
        status: Dict[str, Dict[str, Any]] = {}
        locks = [self._locks[i] for i in self._lock_indexes([k for k, _ in rules])]
        for lock in locks:
            await lock.acquire()
        try:
            for key, rule in rules:
                has_room, remaining, reset_at = self._peek(self._state(key), rule, now)
                status[rule.name] = {
                    "limit": rule.limit,
                    "remaining": remaining + 1 if has_room else 0,
                    "reset_at": reset_at,
                }
        finally:
            for lock in reversed(locks):
                lock.release()
        return status

    def clear(self, pattern: Optional[str] = None) -> int:
        """Drop state for keys containing pattern (all state when omitted)."""
        if pattern is None:
            removed = len(self._states)
            self._states.clear()
        else:
            doomed = [key for key in self._states if pattern in key]
            for key in doomed:
                del self._states[key]
            removed = len(doomed)
        logger.info("Rate limit state cleared", pattern=pattern, removed=removed)
        return removed

    def cleanup_idle(self) -> int:
        """Remove scope state that has not been touched for idle_seconds."""
        cutoff = self._clock() - self.config.idle_seconds
        idle = [key for key, state in self._states.items() if state.last_seen < cutoff]
        for key in idle:
            del self._states[key]
        if idle:
            logger.debug("Rate limit cleanup", removed=len(idle), remaining=len(self._states))
        return len(idle)

    async def start(self):
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self):
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self):
        while self._running:
            await asyncio.sleep(self.config.cleanup_interval)
            self.cleanup_idle()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "strategy": self.config.strategy.value,
            "tracked_scopes": len(self._states),
            "rejections": dict(self.rejections),
        }
