"""
OpenAI provider implementation.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
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


class OpenAIProvider(BaseProvider):
    """OpenAI chat completions. Single attempt per call; the router owns retries."""

    SUPPORTED_MODELS = ["gpt-4o", "gpt-4", "gpt-3.5-turbo"]

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(name="openai", timeout=timeout)
        self.client = client or AsyncOpenAI(
            api_key=api_key, timeout=timeout, max_retries=0, base_url=base_url
        )

    async def send(
        self,
        prompt_text: str,
        system_prompt: Optional[str],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderResult:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt_text})

        self._log_request(model, prompt_text, temperature=temperature, max_tokens=max_tokens)
        start_time = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except APITimeoutError as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            raise ProviderTimeoutError(f"OpenAI request timeout: {e}", provider=self.name) from e
        except APIConnectionError as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            raise ProviderUnavailableError(
                f"Failed to connect to OpenAI API: {e}", provider=self.name
            ) from e
        except APIStatusError as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            self._log_error(e, model)
            raise classify_status(e.status_code, f"OpenAI API error: {e.message}", self.name) from e
        except Exception as e:
            self._record(False, (time.perf_counter() - start_time) * 1000)
            self._log_error(e, model)
            raise ProviderError(f"Unexpected error: {e}", provider=self.name) from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        choice = response.choices[0]
        usage = response.usage
        result = ProviderResult(
            content=choice.message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
            model=response.model,
            finish_reason=choice.finish_reason,
        )
        self._record(True, latency_ms)
        self._log_response(result)
        return result
