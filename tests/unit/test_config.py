"""Test configuration loading."""

import pytest
from pydantic import ValidationError

from inference_orchestrator.config import Settings
from inference_orchestrator.rate_limit.rate_limiter import RateLimiterConfig, RateLimitStrategy


def test_default_settings():
    settings = Settings()
    assert settings.app_name == "Inference Orchestrator"
    assert settings.semantic_cache_threshold == 0.85
    assert settings.redis_url is None
    assert settings.budget_hard_block is False


def test_env_override(monkeypatch):
    monkeypatch.setenv("ORCH_APP_NAME", "Test App")
    monkeypatch.setenv("ORCH_RATE_LIMIT_STRATEGY", "token_bucket")
    monkeypatch.setenv("ORCH_BUDGET_HARD_BLOCK", "true")
    settings = Settings()
    assert settings.app_name == "Test App"
    assert settings.rate_limit_strategy == "token_bucket"
    assert settings.budget_hard_block is True


@pytest.mark.parametrize(
    "field,value",
    [
        ("semantic_cache_threshold", 0.0),
        ("semantic_cache_threshold", 1.5),
        ("rate_limit_strategy", "leaky_bucket"),
        ("log_level", "verbose"),
    ],
)
def test_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_log_level_is_normalized():
    assert Settings(log_level="debug").log_level == "DEBUG"


def test_rate_limiter_config_from_settings(test_settings):
    config = RateLimiterConfig.from_settings(test_settings)
    assert config.per_user_limit == 5
    assert config.strategy == RateLimitStrategy.SLIDING_WINDOW
