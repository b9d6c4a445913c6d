"""Application settings for the meeting intelligence service."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from ``MEETPREP_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MEETPREP_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(
        default="http://localhost:3000,https://localhost:3000",
        validation_alias=AliasChoices("meetprep_cors_origins", "cors_origins"),
    )

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        if not self.cors_origins_str.strip():
            return ["http://localhost:3000", "https://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Google OAuth (ID token audience)
    google_client_id: str | None = None

    # LLM
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.2
    openai_max_tokens: int = 2000
    llm_timeout_seconds: float = 30.0
    llm_max_retries: int = 2

    # Graph store
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = "password"
    neo4j_database: str = "neo4j"
    graph_query_timeout_seconds: float = 15.0

    # Planner
    planner_history_turns: int = 3

    # Strategy validation thresholds
    max_steps: int = 10
    max_slow_queries: int = 3

    # Iterative analysis thresholds
    min_results_for_analysis: int = 1
    max_follow_up_steps: int = 3
    confidence_threshold: float = 0.7
    completeness_threshold: float = 0.8

    # Pipeline
    max_iterations: int = 3

    # Execution context store
    max_context_age_seconds: int = 3600
    max_contexts: int = 100
    context_sweep_interval_seconds: int = 300

    # Cataloging worker
    worker_months_back: int = 1
    worker_batch_size: int = 100

    @field_validator("confidence_threshold", "completeness_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Thresholds are probabilities."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("Thresholds must be between 0 and 1")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
