"""Mock provider for testing and offline runs."""

import asyncio
import time
from collections import deque
from typing import Deque, Dict, List, Optional

from .base import BaseProvider, ProviderResult


def estimate_tokens(text: str) -> int:
    """Rough token count (four characters per token)."""
    return max(1, len(text) // 4)


class MockProvider(BaseProvider):
    """Deterministic provider without real API calls.

    ``failures`` is consumed one exception per call before any successful
    response is produced, which lets tests script retry and failover paths.
    """

    def __init__(
        self,
        name: str = "mock",
        latency: float = 0.0,
        response_template: str = "Mock response to: {prompt}",
        failures: Optional[List[Exception]] = None,
    ):
        super().__init__(name=name)
        self.latency = latency
        self.response_template = response_template
        self.failures: Deque[Exception] = deque(failures or [])
        self.calls: List[Dict] = []

    def fail_next(self, *errors: Exception):
        self.failures.extend(errors)

    async def send(
        self,
        prompt_text: str,
        system_prompt: Optional[str],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderResult:
        self.calls.append(
            {
                "prompt": prompt_text,
                "system_prompt": system_prompt,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        start_time = time.perf_counter()
        if self.latency:
            await asyncio.sleep(self.latency)

        if self.failures:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            raise self.failures.popleft()

        content = self.response_template.format(prompt=prompt_text, model=model)
        latency_ms = (time.perf_counter() - start_time) * 1000
        self._record(True, latency_ms)
        return ProviderResult(
            content=content,
            input_tokens=estimate_tokens((system_prompt or "") + prompt_text),
            output_tokens=min(max_tokens, estimate_tokens(content)),
            latency_ms=latency_ms,
            model=model,
            finish_reason="stop",
        )
