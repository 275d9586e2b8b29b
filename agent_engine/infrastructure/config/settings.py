"""Engine settings loaded from environment variables."""
from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelPrice(BaseModel):
    """USD price per 1K tokens"""
    prompt_per_1k: float = 0.0
    completion_per_1k: float = 0.0


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AGENT_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    service_name: str = "agent-engine"
    log_level: str = "INFO"
    log_format: str = "json"

    # Execution budgets
    default_max_steps: int = 10
    default_timeout_seconds: float = 120.0
    model_call_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 30.0
    max_concurrent_executions: int = 32

    # Model gateway retries
    model_retry_attempts: int = 3
    retry_backoff_min_seconds: float = 1.0
    retry_backoff_max_seconds: float = 10.0

    # Memory
    short_term_token_budget: int = 4000
    long_term_limit: int = 10
    episodic_limit: int = 5
    summary_max_tokens: int = 512

    # Usage metering
    quota_policy: str = "hard_stop"
    quota_tokens: int = 500_000
    quota_period_seconds: int = 30 * 24 * 3600
    overage_multiplier: float = 1.5
    quota_reconcile_interval_seconds: float = 300.0
    model_pricing: Dict[str, ModelPrice] = {
        "default": ModelPrice(prompt_per_1k=0.0025, completion_per_1k=0.01),
        "gpt-4o": ModelPrice(prompt_per_1k=0.0025, completion_per_1k=0.01),
        "gpt-4o-mini": ModelPrice(prompt_per_1k=0.00015, completion_per_1k=0.0006),
    }

    # Triggers
    schedule_tick_seconds: float = 30.0

    # Tracing
    tracing_enabled: bool = False
    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: Optional[str] = None

    def price_for(self, model: str) -> ModelPrice:
        return self.model_pricing.get(model) or self.model_pricing.get("default") or ModelPrice()


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings()
