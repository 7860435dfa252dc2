"""Tests for provider adapters and error classification."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest

from inference_orchestrator.providers import (
    AnthropicProvider,
    AuthenticationError,
    InsufficientCreditsError,
    InvalidRequestError,
    MockProvider,
    ModelOverloadedError,
    OpenAIProvider,
    ProviderError,
    ProviderRateLimitError,
    ProviderStatus,
    ProviderTimeoutError,
    ProviderUnavailableError,
    classify_status,
)

REQUEST = httpx.Request("POST", "https://api.example.com/v1")


def status_error(module, status_code, message="boom"):
    response = httpx.Response(status_code, request=REQUEST)
    return module.APIStatusError(message, response=response, body=None)


def openai_response(content="Listen first.", prompt_tokens=12, completion_tokens=5):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="gpt-4o-2024-08-06",
    )


def anthropic_response(text="Try reflecting back."):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=20, output_tokens=8),
        model="claude-3-5-sonnet-20241022",
        stop_reason="end_turn",
    )


class TestClassifyStatus:
    @pytest.mark.parametrize(
        "status,message,expected,retryable",
        [
            (429, "slow down", ProviderRateLimitError, True),
            (401, "bad key", AuthenticationError, False),
            (403, "forbidden", AuthenticationError, False),
            (402, "payment required", InsufficientCreditsError, False),
            (400, "You exceeded your current quota", InsufficientCreditsError, False),
            (400, "bad request", InvalidRequestError, False),
            (503, "unavailable", ModelOverloadedError, True),
            (529, "overloaded", ModelOverloadedError, True),
            (408, "request timeout", ProviderTimeoutError, True),
            (500, "internal", ProviderUnavailableError, True),
            (None, "something odd", ProviderError, False),
        ],
    )
    def test_mapping(self, status, message, expected, retryable):
        error = classify_status(status, message, "openai")
        assert type(error) is expected
        assert error.retryable is retryable
        assert error.provider == "openai"

    def test_to_dict(self):
        data = classify_status(429, "slow down", "anthropic").to_dict()
        assert data == {
            "error_code": "RATE_LIMIT_EXCEEDED",
            "message": "slow down",
            "provider": "anthropic",
            "status_code": 429,
            "retryable": True,
        }


class TestMockProvider:
    @pytest.mark.asyncio
    async def test_response_and_usage(self):
        provider = MockProvider(name="mock", response_template="[{model}] {prompt}")
        result = await provider.send("hello there", "be kind", "gpt-4o", 100, 0.5)

        assert result.content == "[gpt-4o] hello there"
        assert result.input_tokens > 0
        assert result.output_tokens > 0
        assert provider.calls[0]["system_prompt"] == "be kind"

    @pytest.mark.asyncio
    async def test_scripted_failures(self):
        provider = MockProvider(failures=[ProviderTimeoutError("slow")])
        with pytest.raises(ProviderTimeoutError):
            await provider.send("hi", None, "m", 10, 0.0)
        assert (await provider.send("hi", None, "m", 10, 0.0)).content

        assert provider.metrics.total_requests == 2
        assert provider.metrics.failed_requests == 1

    @pytest.mark.asyncio
    async def test_health_degrades(self):
        provider = MockProvider(failures=[ProviderUnavailableError("down") for _ in range(10)])
        for _ in range(10):
            with pytest.raises(ProviderUnavailableError):
                await provider.send("hi", None, "m", 10, 0.0)

        assert provider.status == ProviderStatus.UNHEALTHY
        assert await provider.health_check() is False


class TestOpenAIProvider:
    """Test suite for the OpenAI adapter with a mocked SDK client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=openai_response())
        return client

    @pytest.mark.asyncio
    async def test_send(self, client):
        provider = OpenAIProvider(client=client)
        result = await provider.send("How do I listen?", "You are a coach.", "gpt-4o", 256, 0.7)

        assert result.content == "Listen first."
        assert result.input_tokens == 12
        assert result.output_tokens == 5
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "You are a coach."}
        assert kwargs["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_status_error_is_classified(self, client):
        client.chat.completions.create.side_effect = status_error(openai, 429)
        provider = OpenAIProvider(client=client)

        with pytest.raises(ProviderRateLimitError) as exc_info:
            await provider.send("hi", None, "gpt-4o", 10, 0.0)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        client.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)
        provider = OpenAIProvider(client=client)

        with pytest.raises(ProviderTimeoutError):
            await provider.send("hi", None, "gpt-4o", 10, 0.0)

    @pytest.mark.asyncio
    async def test_connection_error(self, client):
        client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)
        provider = OpenAIProvider(client=client)

        with pytest.raises(ProviderUnavailableError):
            await provider.send("hi", None, "gpt-4o", 10, 0.0)

    def test_supports(self, client):
        provider = OpenAIProvider(client=client)
        assert provider.supports("gpt-4o-mini")
        assert not provider.supports("claude-3-haiku-20240307")


class TestAnthropicProvider:
    """Test suite for the Anthropic adapter with a mocked SDK client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=anthropic_response())
        return client

    @pytest.mark.asyncio
    async def test_send(self, client):
        provider = AnthropicProvider(client=client)
        result = await provider.send("How do I listen?", "You are a coach.", "claude-3-5-sonnet-20241022", 512, 0.3)

        assert result.content == "Try reflecting back."
        assert result.input_tokens == 20
        assert result.finish_reason == "end_turn"
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "You are a coach."
        assert kwargs["messages"] == [{"role": "user", "content": "How do I listen?"}]

    @pytest.mark.asyncio
    async def test_overloaded(self, client):
        client.messages.create.side_effect = status_error(anthropic, 529, "Overloaded")
        provider = AnthropicProvider(client=client)

        with pytest.raises(ModelOverloadedError):
            await provider.send("hi", None, "claude-3-haiku-20240307", 10, 0.0)

    @pytest.mark.asyncio
    async def test_auth_error_not_retryable(self, client):
        client.messages.create.side_effect = status_error(anthropic, 401, "invalid x-api-key")
        provider = AnthropicProvider(client=client)

        with pytest.raises(AuthenticationError) as exc_info:
            await provider.send("hi", None, "claude-3-haiku-20240307", 10, 0.0)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, client):
        client.messages.create.side_effect = RuntimeError("kaboom")
        provider = AnthropicProvider(client=client)

        with pytest.raises(ProviderError) as exc_info:
            await provider.send("hi", None, "claude-3-haiku-20240307", 10, 0.0)
        assert "kaboom" in str(exc_info.value)
