"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
Settings are read once at process start and handed to the components that
need them; nothing in the routing core reads the environment at call time.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    log_level: str = Field(
        default="INFO",
        description="Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON. Forced on in production.",
    )

    # ------------------------------------------------------------------ #
    # Telemetry & Circuit Breaking
    # ------------------------------------------------------------------ #
    llm_telemetry_ewma_alpha: float = Field(
        default=0.3,
        gt=0.0,
        le=1.0,
        description="EWMA smoothing factor. Higher reacts faster to new observations.",
    )
    telemetry_max_age_hours: float = Field(
        default=24.0,
        gt=0,
        description="Telemetry older than this is reset instead of blended",
    )
    circuit_breaker_error_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="EWMA error rate above which a model is circuit-broken",
    )
    circuit_breaker_min_requests: int = Field(
        default=5,
        ge=1,
        description="Observations required before a model can be circuit-broken",
    )

    # ------------------------------------------------------------------ #
    # Decision Explainability
    # ------------------------------------------------------------------ #
    decision_log_capacity: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Decision logs retained per organization (oldest evicted, hard cap 100)",
    )

    # ------------------------------------------------------------------ #
    # Default Policy - paid tier
    # ------------------------------------------------------------------ #
    llm_default_trial_mode: bool = Field(
        default=False,
        description="Tier assumed for organizations without a stored policy",
    )
    llm_allowed_providers: list[str] = Field(
        default=["openai", "anthropic"],
        description="Providers allowed when a stored policy does not say otherwise",
    )
    llm_max_daily_cost: float = Field(default=10.00, gt=0)
    llm_max_cost_per_request: float = Field(default=0.03, gt=0)
    llm_max_tokens_input: int = Field(default=32_000, ge=1)
    llm_max_tokens_output: int = Field(default=8_000, ge=1)
    llm_max_concurrent_jobs: int = Field(default=10, ge=1)
    llm_burst_rate_limit: int = Field(default=60, ge=1)
    llm_sustained_rate_limit: int = Field(default=600, ge=1)

    # ------------------------------------------------------------------ #
    # Default Policy - trial tier (still clamped to hard ceilings)
    # ------------------------------------------------------------------ #
    llm_trial_max_daily_cost: float = Field(default=1.00, gt=0)
    llm_trial_max_cost_per_request: float = Field(default=0.02, gt=0)
    llm_trial_max_tokens_input: int = Field(default=8_000, ge=1)
    llm_trial_max_tokens_output: int = Field(default=2_000, ge=1)
    llm_trial_max_concurrent_jobs: int = Field(default=2, ge=1)
    llm_trial_burst_rate_limit: int = Field(default=10, ge=1)
    llm_trial_sustained_rate_limit: int = Field(default=60, ge=1)

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _json_logs_in_prod(self) -> Settings:
        if self.environment == Environment.PROD:
            self.json_logs = True
        return self

    @model_validator(mode="after")
    def _validate_cost_ordering(self) -> Settings:
        """Refuse to start with per-request caps above the daily caps."""
        errors: list[str] = []
        if self.llm_max_cost_per_request > self.llm_max_daily_cost:
            errors.append(
                "LLM_MAX_COST_PER_REQUEST must not exceed LLM_MAX_DAILY_COST"
            )
        if self.llm_trial_max_cost_per_request > self.llm_trial_max_daily_cost:
            errors.append(
                "LLM_TRIAL_MAX_COST_PER_REQUEST must not exceed LLM_TRIAL_MAX_DAILY_COST"
            )
        if not self.llm_allowed_providers:
            errors.append("LLM_ALLOWED_PROVIDERS must name at least one provider")
        if errors:
            raise ValueError("; ".join(errors))
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Call once at startup and pass the result to build_strategy_manager();
    tests construct Settings directly.
    """
    return Settings()
