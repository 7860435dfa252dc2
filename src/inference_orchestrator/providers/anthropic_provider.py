"""
Anthropic provider implementation.
"""

import logging
import time
from typing import Any, Dict, Optional

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
)

from .base import (
    BaseProvider,
    ProviderError,
    ProviderResult,
    ProviderTimeoutError,
    ProviderUnavailableError,
    classify_status,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API. Single attempt per call; the router owns retries."""

    SUPPORTED_MODELS = ["claude-3-5-sonnet", "claude-3-opus", "claude-3-sonnet", "claude-3-haiku"]

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[AsyncAnthropic] = None,
    ):
        super().__init__(name="anthropic", timeout=timeout)
        self.client = client or AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def send(
        self,
        prompt_text: str,
        system_prompt: Optional[str],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderResult:
        params: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt_text}],
        }
        if system_prompt:
            params["system"] = system_prompt

        self._log_request(model, prompt_text, temperature=temperature, max_tokens=max_tokens)
        start_time = time.perf_counter()
        try:
            response = await self.client.messages.create(**params)
        except APITimeoutError as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            raise ProviderTimeoutError(f"Anthropic request timeout: {e}", provider=self.name) from e
        except APIConnectionError as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            raise ProviderUnavailableError(
                f"Failed to connect to Anthropic API: {e}", provider=self.name
            ) from e
        except APIStatusError as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            self._log_error(e, model)
            raise classify_status(e.status_code, f"Anthropic API error: {e.message}", self.name) from e
        except Exception as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            self._log_error(e, model)
            raise ProviderError(f"Unexpected error: {e}", provider=self.name) from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        result = ProviderResult(
            content=content,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            latency_ms=latency_ms,
            model=response.model,
            finish_reason=response.stop_reason,
        )
        self._record(True, latency_ms)
        self._log_response(result)
        return result
