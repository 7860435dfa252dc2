"""Pytest configuration and fixtures."""

import pytest
import pytest_asyncio

from inference_orchestrator.cache.semantic_cache import SemanticCache
from inference_orchestrator.config.settings import Settings
from inference_orchestrator.experiments.engine import ExperimentEngine
from inference_orchestrator.finops.cost_optimizer import CostOptimizer
from inference_orchestrator.orchestrator import Orchestrator
from inference_orchestrator.providers.mock_provider import MockProvider
from inference_orchestrator.rate_limit.rate_limiter import RateLimiter, RateLimiterConfig
from inference_orchestrator.routing.provider_router import ProviderRouter
from inference_orchestrator.schemas.inference import InferenceRequest
from inference_orchestrator.storage.memory import InMemoryStore
from inference_orchestrator.telemetry.event_sink import EventQueue, InMemoryEventSink
from inference_orchestrator.telemetry.metrics import MetricsCollector


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    """Provide settings isolated from the environment."""
    return Settings(
        environment="test",
        log_format="console",
        metrics_namespace="test_orchestrator",
        rate_limit_per_user=5,
        event_batch_size=1000,
    )


@pytest.fixture
def metrics():
    return MetricsCollector(namespace="test_orchestrator")


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def event_queue(event_sink, metrics):
    return EventQueue(event_sink, batch_size=1000, flush_interval_ms=60000, metrics=metrics)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def anthropic_mock():
    return MockProvider(name="anthropic")


@pytest.fixture
def openai_mock():
    return MockProvider(name="openai")


@pytest.fixture
def router(anthropic_mock, openai_mock, metrics, event_queue):
    return ProviderRouter(
        {"anthropic": anthropic_mock, "openai": openai_mock},
        timeout_seconds=2.0,
        retry_delay_scale=0,
        metrics=metrics,
        event_queue=event_queue,
    )


@pytest.fixture
def experiment_engine(store, event_queue, metrics, clock):
    return ExperimentEngine(
        store=store,
        event_queue=event_queue,
        metrics=metrics,
        salt="test-salt",
        environment="test",
        clock=clock,
    )


@pytest.fixture
def make_request():
    def _make(prompt: str = "How do I listen better?", user_id: str = "user_1", **kwargs):
        kwargs.setdefault("capability", "communication_advisor")
        return InferenceRequest(user_id=user_id, input_payload={"prompt": prompt}, **kwargs)

    return _make


@pytest_asyncio.fixture
async def orchestrator(router, experiment_engine, event_queue, metrics, clock):
    orch = Orchestrator(
        router=router,
        rate_limiter=RateLimiter(RateLimiterConfig(per_user_limit=50, per_capability_limit=50), clock=clock),
        cache=SemanticCache(metrics=metrics, clock=clock),
        cost_optimizer=CostOptimizer(event_queue=event_queue, metrics=metrics, clock=clock),
        experiment_engine=experiment_engine,
        event_queue=event_queue,
        metrics=metrics,
    )
    yield orch
    await orch.stop()
