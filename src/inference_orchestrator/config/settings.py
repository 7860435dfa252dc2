"""Settings configuration"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings loaded from the environment or a .env file"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        validate_assignment=True,
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="Inference Orchestrator", validation_alias="ORCH_APP_NAME")
    environment: str = Field(default="development", validation_alias="ORCH_ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="ORCH_LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="ORCH_LOG_FORMAT")
    metrics_namespace: str = Field(
        default="inference_orchestrator", validation_alias="ORCH_METRICS_NAMESPACE"
    )

    # API Keys
    openai_api_key: Optional[SecretStr] = Field(default=None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[SecretStr] = Field(default=None, validation_alias="ANTHROPIC_API_KEY")

    # Redis
    redis_url: Optional[str] = Field(default=None, validation_alias="ORCH_REDIS_URL")
    redis_key_prefix: str = Field(default="orch:", validation_alias="ORCH_REDIS_KEY_PREFIX")

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True, validation_alias="ORCH_RATE_LIMIT_ENABLED")
    rate_limit_strategy: str = Field(default="sliding_window", validation_alias="ORCH_RATE_LIMIT_STRATEGY")
    rate_limit_window_seconds: float = Field(default=60.0, gt=0, validation_alias="ORCH_RATE_LIMIT_WINDOW")
    rate_limit_global: int = Field(default=100, ge=1, validation_alias="ORCH_RATE_LIMIT_GLOBAL")
    rate_limit_per_user: int = Field(default=20, ge=1, validation_alias="ORCH_RATE_LIMIT_PER_USER")
    rate_limit_per_capability: int = Field(default=30, ge=1, validation_alias="ORCH_RATE_LIMIT_PER_CAPABILITY")
    rate_limit_premium: int = Field(default=50, ge=1, validation_alias="ORCH_RATE_LIMIT_PREMIUM")
    rate_limit_enterprise: int = Field(default=200, ge=1, validation_alias="ORCH_RATE_LIMIT_ENTERPRISE")
    rate_limit_cleanup_interval: float = Field(default=300.0, gt=0, validation_alias="ORCH_RATE_LIMIT_CLEANUP_INTERVAL")
    rate_limit_idle_seconds: float = Field(default=3600.0, gt=0, validation_alias="ORCH_RATE_LIMIT_IDLE_SECONDS")

    # Cache
    cache_enabled: bool = Field(default=True, validation_alias="ORCH_CACHE_ENABLED")
    cache_ttl_seconds: int = Field(default=86400, ge=1, validation_alias="ORCH_CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=10000, ge=1, validation_alias="ORCH_CACHE_MAX_ENTRIES")
    semantic_cache_threshold: float = Field(default=0.85, validation_alias="ORCH_SEMANTIC_CACHE_THRESHOLD")
    embedding_dimensions: int = Field(default=256, ge=16, validation_alias="ORCH_EMBEDDING_DIMENSIONS")
    cache_sweep_interval: float = Field(default=3600.0, gt=0, validation_alias="ORCH_CACHE_SWEEP_INTERVAL")

    # Budgets
    budget_hard_block: bool = Field(default=False, validation_alias="ORCH_BUDGET_HARD_BLOCK")
    budget_check_interval: float = Field(default=300.0, gt=0, validation_alias="ORCH_BUDGET_CHECK_INTERVAL")
    cost_history_limit: int = Field(default=1000, ge=1, validation_alias="ORCH_COST_HISTORY_LIMIT")
    cost_retention_days: int = Field(default=30, ge=1, validation_alias="ORCH_COST_RETENTION_DAYS")
    cost_optimization_enabled: bool = Field(default=True, validation_alias="ORCH_COST_OPTIMIZATION_ENABLED")

    # Provider routing
    max_concurrent_requests: int = Field(default=16, ge=1, validation_alias="ORCH_MAX_CONCURRENT_REQUESTS")
    provider_timeout_seconds: float = Field(default=30.0, gt=0, validation_alias="ORCH_PROVIDER_TIMEOUT")
    enable_fallback: bool = Field(default=True, validation_alias="ORCH_ENABLE_FALLBACK")
    circuit_failure_threshold: int = Field(default=5, ge=1, validation_alias="ORCH_CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_timeout: float = Field(default=60.0, gt=0, validation_alias="ORCH_CIRCUIT_RECOVERY_TIMEOUT")

    # Event sink
    event_batch_size: int = Field(default=50, ge=1, validation_alias="ORCH_EVENT_BATCH_SIZE")
    event_flush_interval_ms: int = Field(default=30000, ge=1, validation_alias="ORCH_EVENT_FLUSH_INTERVAL_MS")

    # Experiments
    experiment_hash_salt: str = Field(default="inference-orchestrator", validation_alias="ORCH_EXPERIMENT_SALT")
    flag_cache_ttl_seconds: float = Field(default=900.0, ge=0, validation_alias="ORCH_FLAG_CACHE_TTL")
    flag_cache_max_entries: int = Field(default=10000, ge=1, validation_alias="ORCH_FLAG_CACHE_MAX_ENTRIES")

    @field_validator("semantic_cache_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("semantic_cache_threshold must be in (0, 1]")
        return v

    @field_validator("rate_limit_strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        allowed = {"sliding_window", "fixed_window", "token_bucket"}
        if v not in allowed:
            raise ValueError(f"rate_limit_strategy must be one of {sorted(allowed)}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
