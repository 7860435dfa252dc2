"""Retry handler with exponential backoff."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
    wait_random_exponential,
)

from inference_orchestrator.routing.capabilities import RetryPolicy

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Provider errors carry their own retry decision; anything else is final."""
    return bool(getattr(error, "retryable", False))


class RetryHandler:
    """Retries retryable failures with jittered exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 30.0,
        multiplier: float = 2.0,
        jitter: bool = True,
    ):
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.multiplier = multiplier
        self.jitter = jitter

    def _wait_strategy(self):
        if self.max_wait <= 0:
            return wait_none()
        if self.jitter:
            return wait_random_exponential(
                multiplier=self.min_wait, exp_base=self.multiplier, min=self.min_wait, max=self.max_wait
            )
        return wait_exponential(
            multiplier=self.min_wait, exp_base=self.multiplier, min=self.min_wait, max=self.max_wait
        )

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        on_retry: Callable[[BaseException, int], None] | None = None,
        **kwargs,
    ) -> T:
        """Run func, retrying while the raised error is retryable."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    number = attempt.retry_state.attempt_number
                    if on_retry and is_retryable(e) and number < self.max_attempts:
                        on_retry(e, number)
                    raise

        raise RuntimeError("Retry loop completed without returning")

    @staticmethod
    def from_policy(policy: RetryPolicy, delay_scale: float = 1.0) -> "RetryHandler":
        """Build a handler from a capability retry policy; delay_scale 0 disables waiting."""
        return RetryHandler(
            max_attempts=max(1, policy.max_attempts),
            min_wait=policy.base_delay_ms / 1000 * delay_scale,
            max_wait=policy.max_delay_ms / 1000 * delay_scale,
            multiplier=policy.multiplier,
            jitter=True,
        )
