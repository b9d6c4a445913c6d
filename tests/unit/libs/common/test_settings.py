"""Tests for application settings."""

import os
import tempfile

import pytest
from pydantic import ValidationError

from libs.common.settings import Settings, get_settings


class TestSettings:
    """Test settings configuration."""

    def test_settings_from_env_file(self):
        """Test settings loaded from an env file."""
        env_vars = {
            "MEETPREP_NEO4J_URI": "bolt://graph:7687",
            "MEETPREP_MAX_STEPS": "6",
            "MEETPREP_OPENAI_MODEL": "gpt-4o",
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".env", delete=False) as f:
            for key, value in env_vars.items():
                f.write(f"{key}={value}\n")
            env_file = f.name

        try:
            settings = Settings(_env_file=env_file)
            assert settings.neo4j_uri == "bolt://graph:7687"
            assert settings.max_steps == 6
            assert settings.openai_model == "gpt-4o"
        finally:
            os.unlink(env_file)

    def test_settings_validation_threshold_out_of_range(self):
        """Test that thresholds outside [0, 1] are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            Settings(confidence_threshold=1.5)
        assert "Thresholds must be between 0 and 1" in str(exc_info.value)

    def test_settings_cors_origins_parsing(self, monkeypatch):
        """Test CORS origins parsing from comma-separated string."""
        monkeypatch.setenv("MEETPREP_CORS_ORIGINS", "http://localhost:3000, http://localhost:8080")

        settings = Settings()

        assert settings.cors_origins == ["http://localhost:3000", "http://localhost:8080"]

    def test_settings_cors_origins_blank_uses_defaults(self):
        settings = Settings(cors_origins="  ")

        assert settings.cors_origins == ["http://localhost:3000", "https://localhost:3000"]

    def test_settings_environment_properties(self):
        """Test environment detection properties."""
        dev_settings = Settings(app_env="development")
        assert dev_settings.is_development is True
        assert dev_settings.is_production is False

        prod_settings = Settings(app_env="production")
        assert prod_settings.is_development is False
        assert prod_settings.is_production is True

    def test_settings_defaults(self, monkeypatch):
        """Test default values are set correctly."""
        monkeypatch.delenv("MEETPREP_APP_ENV", raising=False)

        settings = Settings()

        assert settings.app_env == "development"
        assert settings.log_level == "INFO"
        assert settings.max_steps == 10
        assert settings.max_slow_queries == 3
        assert settings.max_follow_up_steps == 3
        assert settings.confidence_threshold == 0.7
        assert settings.completeness_threshold == 0.8
        assert settings.max_iterations == 3
        assert settings.max_context_age_seconds == 3600

    def test_settings_env_prefix(self, monkeypatch):
        """Test that environment variables use MEETPREP_ prefix."""
        monkeypatch.setenv("MEETPREP_MAX_ITERATIONS", "5")
        monkeypatch.setenv("MAX_ITERATIONS", "9")

        assert Settings().max_iterations == 5

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
