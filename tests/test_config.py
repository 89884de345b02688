"""
Tests for Configuration Module

Tests the Settings and configuration management.
"""

import os
import pytest
from unittest.mock import patch


class TestGetEnv:
    """Tests for environment variable helpers."""

    def test_get_env_with_default(self):
        """Test getting env var with default."""
        from tutor.config import get_env

        result = get_env("NONEXISTENT_VAR", "default_value")
        assert result == "default_value"

    def test_get_env_existing(self):
        """Test getting existing env var."""
        from tutor.config import get_env

        with patch.dict(os.environ, {"TEST_VAR": "test_value"}):
            result = get_env("TEST_VAR")
            assert result == "test_value"

    def test_get_env_required_missing(self):
        """Test required env var raises error when missing."""
        from tutor.config import get_env

        with pytest.raises(ValueError):
            get_env("DEFINITELY_NOT_SET", required=True)


class TestGetEnvTyped:
    """Tests for typed environment variable helpers."""

    def test_get_env_int(self):
        """Test getting int from env."""
        from tutor.config import get_env_int

        with patch.dict(os.environ, {"INT_VAR": "6"}):
            result = get_env_int("INT_VAR", 0)
            assert result == 6
            assert isinstance(result, int)

    def test_get_env_float(self):
        """Test getting float from env."""
        from tutor.config import get_env_float

        with patch.dict(os.environ, {"FLOAT_VAR": "0.8"}):
            result = get_env_float("FLOAT_VAR", 0.0)
            assert result == 0.8
            assert isinstance(result, float)

    def test_get_env_list(self):
        """Comma-separated values are split and stripped."""
        from tutor.config import get_env_list

        with patch.dict(os.environ, {"LIST_VAR": " dr, mr ,, etc "}):
            assert get_env_list("LIST_VAR") == ["dr", "mr", "etc"]
        assert get_env_list("UNSET_LIST_VAR", "a,b") == ["a", "b"]


class TestAzureOpenAIConfig:
    """Tests for Azure OpenAI configuration."""

    def test_deployment_for_tier(self):
        """Fast responders use the fast deployment, everything else quality."""
        from tutor.config import AzureOpenAIConfig

        config = AzureOpenAIConfig(fast_deployment="fast-model", quality_deployment="quality-model")
        assert config.deployment_for("fast") == "fast-model"
        assert config.deployment_for("quality") == "quality-model"

    def test_validate_missing_key(self):
        """Test validation fails without API key."""
        from tutor.config import AzureOpenAIConfig

        config = AzureOpenAIConfig(api_key="", endpoint="https://test.openai.azure.com")

        with pytest.raises(ValueError, match="API_KEY"):
            config.validate()

    def test_url_building_lives_in_client(self):
        """The config carries endpoint parts only; the chat client builds URLs."""
        import tutor.config as config_module
        from tutor.config import AzureOpenAIConfig

        assert not hasattr(AzureOpenAIConfig, "chat_url")
        assert not hasattr(config_module, "get_env_bool")


class TestPipelineConfig:
    """Tests for pipeline section defaults and validation."""

    def test_defaults(self):
        """Defaults match the documented pipeline constants."""
        from tutor.config import SynthesisConfig, ValidationConfig, ExtractorConfig

        synthesis = SynthesisConfig()
        validation = ValidationConfig()
        extractor = ExtractorConfig()

        assert synthesis.max_concurrency == 6
        assert synthesis.failure_threshold == 3
        assert synthesis.max_chars == 500
        assert validation.timeout == 10.0
        assert validation.approval_threshold == 0.80
        assert validation.max_attempts == 2
        assert extractor.min_significant_chars == 20
        assert "dr" in extractor.abbreviations

    def test_env_override(self):
        """Sections read their values from the environment."""
        from tutor.config import SynthesisConfig

        with patch.dict(os.environ, {"SYNTHESIS_MAX_CONCURRENCY": "2"}):
            assert SynthesisConfig().max_concurrency == 2

    def test_validate_threshold_range(self):
        """Approval threshold must be a probability."""
        from tutor.config import ValidationConfig

        config = ValidationConfig()
        config.approval_threshold = 1.5

        with pytest.raises(ValueError, match="between 0 and 1"):
            config.validate()

    def test_validate_concurrency(self):
        """Concurrency bound must be positive."""
        from tutor.config import SynthesisConfig

        config = SynthesisConfig()
        config.max_concurrency = 0

        with pytest.raises(ValueError, match="positive"):
            config.validate()

    def test_validate_policy(self):
        """Only known selection policies are accepted."""
        from tutor.config import RoutingConfig

        config = RoutingConfig()
        config.policy = "magic"

        with pytest.raises(ValueError, match="ROUTING_POLICY"):
            config.validate()


class TestSessionConfig:
    """Tests for session lifetime settings."""

    def test_idle_timeout(self):
        from tutor.config import SessionConfig

        assert SessionConfig().idle_timeout == 3600.0
        with patch.dict(os.environ, {"SESSION_IDLE_TIMEOUT": "90"}):
            assert SessionConfig().idle_timeout == 90.0


class TestSettings:
    """Tests for main Settings class."""

    def test_settings_singleton(self):
        """Test settings is accessible."""
        from tutor.config import settings

        assert settings is not None
        assert hasattr(settings, "azure")
        assert hasattr(settings, "synthesis")
        assert hasattr(settings, "validation")

    def test_is_development(self):
        """Test development mode detection."""
        from tutor.config import Settings

        settings = Settings()
        settings.app_env = "development"
        assert settings.is_development is True
        assert settings.is_production is False

    def test_validate_all(self):
        """Test environment passes full validation."""
        from tutor.config import Settings

        assert Settings().validate_all() is True
