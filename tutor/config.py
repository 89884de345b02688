"""
Configuration Management Module

This module handles all tutor pipeline configuration using environment variables
with sensible defaults. It follows the 12-factor app methodology for configuration.

Usage:
    from tutor.config import settings
    print(settings.synthesis.max_concurrency)

Environment variables are loaded from .env file (if present) and can be
overridden by system environment variables.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
# This should be called before accessing any environment variables
load_dotenv()


DEFAULT_ABBREVIATIONS = (
    "dr,mr,mrs,ms,prof,st,sr,jr,vs,etc,e.g,i.e,fig,no,approx,inc,ltd,mt,ave"
)


def get_env(key: str, default: str = "", required: bool = False) -> str:
    """
    Get an environment variable with optional default and validation.

    Args:
        key: The environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        The environment variable value or default

    Raises:
        ValueError: If required=True and the variable is not set
    """
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get an environment variable as integer."""
    return int(get_env(key, str(default)))


def get_env_float(key: str, default: float) -> float:
    """Get an environment variable as float."""
    return float(get_env(key, str(default)))


def get_env_list(key: str, default: str = "") -> List[str]:
    """Get a comma-separated environment variable as a list of stripped items."""
    raw = get_env(key, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class AzureOpenAIConfig:
    """
    Azure OpenAI service configuration.

    Responders pick a deployment through their tier: ``fast`` responders
    (coordinator, motivator) use the fast deployment, subject specialists
    and the validator use the quality deployment.

    Attributes:
        api_key: Azure OpenAI API key
        endpoint: Azure OpenAI endpoint URL
        api_version: API version string
        fast_deployment: Deployment name for low-latency responders
        quality_deployment: Deployment name for teaching and validation
        temperature: Sampling temperature for teaching responses
        max_tokens: Maximum tokens per response
        request_timeout: Total seconds allowed for one completion request
    """
    api_key: str = field(default_factory=lambda: get_env("AZURE_OPENAI_API_KEY"))
    endpoint: str = field(default_factory=lambda: get_env("AZURE_OPENAI_ENDPOINT"))
    api_version: str = field(default_factory=lambda: get_env("AZURE_OPENAI_API_VERSION", "2024-08-01-preview"))
    fast_deployment: str = field(default_factory=lambda: get_env("AZURE_OPENAI_FAST_DEPLOYMENT", "tutor-fast"))
    quality_deployment: str = field(default_factory=lambda: get_env("AZURE_OPENAI_QUALITY_DEPLOYMENT", "tutor-quality"))
    temperature: float = field(default_factory=lambda: get_env_float("LLM_TEMPERATURE", 0.7))
    max_tokens: int = field(default_factory=lambda: get_env_int("LLM_MAX_TOKENS", 1200))
    request_timeout: float = field(default_factory=lambda: get_env_float("LLM_REQUEST_TIMEOUT", 30.0))

    def validate(self) -> bool:
        """Validate that required Azure OpenAI settings are configured."""
        if not self.api_key:
            raise ValueError("AZURE_OPENAI_API_KEY is required")
        if not self.endpoint:
            raise ValueError("AZURE_OPENAI_ENDPOINT is required")
        return True

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.endpoint)

    def deployment_for(self, tier: str) -> str:
        """Map a responder tier to its deployment name."""
        return self.fast_deployment if tier == "fast" else self.quality_deployment


@dataclass
class SpeechConfig:
    """
    Azure Speech configuration for audio synthesis.

    Attributes:
        api_key: Azure Speech resource key
        region: Azure region of the Speech resource
        voice_name: Voice used when a responder does not name one
        language: Synthesis language
        timeout: Seconds allowed for one synthesis call
    """
    api_key: str = field(default_factory=lambda: get_env("AZURE_SPEECH_KEY"))
    region: str = field(default_factory=lambda: get_env("AZURE_SPEECH_REGION", "eastus"))
    voice_name: str = field(default_factory=lambda: get_env("AZURE_SPEECH_VOICE", "en-US-JennyNeural"))
    language: str = field(default_factory=lambda: get_env("AZURE_SPEECH_LANGUAGE", "en-US"))
    timeout: float = field(default_factory=lambda: get_env_float("SPEECH_TIMEOUT", 15.0))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.region)


@dataclass
class RoutingConfig:
    """
    Session routing configuration.

    Attributes:
        registry_path: JSON file holding responder definitions
        coordinator_id: Responder that routes and answers general questions
        default_responder: Responder used when the selection policy fails
        assessment_responder: Responder forced after a lesson completes
        policy: Selection policy name ("coordinator" or "rules")
    """
    registry_path: str = field(default_factory=lambda: get_env("RESPONDER_REGISTRY_PATH", "./data/responders.json"))
    coordinator_id: str = field(default_factory=lambda: get_env("ROUTING_COORDINATOR", "coordinator"))
    default_responder: str = field(default_factory=lambda: get_env("ROUTING_DEFAULT_RESPONDER", "coordinator"))
    assessment_responder: str = field(default_factory=lambda: get_env("ROUTING_ASSESSMENT_RESPONDER", "assessor"))
    policy: str = field(default_factory=lambda: get_env("ROUTING_POLICY", "coordinator"))

    @property
    def path(self) -> Path:
        return Path(self.registry_path)

    def validate(self) -> bool:
        if self.policy not in ("coordinator", "rules"):
            raise ValueError("ROUTING_POLICY must be 'coordinator' or 'rules'")
        return True


@dataclass
class ExtractorConfig:
    """
    Streaming sentence extraction configuration.

    Attributes:
        abbreviations: Tokens whose trailing period never ends a sentence
        min_significant_chars: Shortest leftover that gets its own synthesis job
    """
    abbreviations: List[str] = field(default_factory=lambda: get_env_list("EXTRACTOR_ABBREVIATIONS", DEFAULT_ABBREVIATIONS))
    min_significant_chars: int = field(default_factory=lambda: get_env_int("EXTRACTOR_MIN_SIGNIFICANT_CHARS", 20))

    def validate(self) -> bool:
        if self.min_significant_chars < 0:
            raise ValueError("EXTRACTOR_MIN_SIGNIFICANT_CHARS cannot be negative")
        return True


@dataclass
class SynthesisConfig:
    """
    Progressive synthesis configuration.

    Attributes:
        max_chars: Per-request character ceiling of the synthesis provider
        max_concurrency: Maximum synthesis jobs running at once
        failure_threshold: Failed jobs that abort progressive mode
        retry_delay: Seconds to wait before the single retry
    """
    max_chars: int = field(default_factory=lambda: get_env_int("SYNTHESIS_MAX_CHARS", 500))
    max_concurrency: int = field(default_factory=lambda: get_env_int("SYNTHESIS_MAX_CONCURRENCY", 6))
    failure_threshold: int = field(default_factory=lambda: get_env_int("SYNTHESIS_FAILURE_THRESHOLD", 3))
    retry_delay: float = field(default_factory=lambda: get_env_float("SYNTHESIS_RETRY_DELAY", 0.2))

    def validate(self) -> bool:
        if self.max_chars <= 0:
            raise ValueError("SYNTHESIS_MAX_CHARS must be positive")
        if self.max_concurrency <= 0:
            raise ValueError("SYNTHESIS_MAX_CONCURRENCY must be positive")
        if self.failure_threshold <= 0:
            raise ValueError("SYNTHESIS_FAILURE_THRESHOLD must be positive")
        return True


@dataclass
class ValidationConfig:
    """
    Validation gate configuration.

    Attributes:
        timeout: Hard wall-clock limit for one validation call
        approval_threshold: Minimum confidence for approval
        max_attempts: Generation attempts per turn before disclaimer delivery
    """
    timeout: float = field(default_factory=lambda: get_env_float("VALIDATION_TIMEOUT", 10.0))
    approval_threshold: float = field(default_factory=lambda: get_env_float("VALIDATION_APPROVAL_THRESHOLD", 0.80))
    max_attempts: int = field(default_factory=lambda: get_env_int("VALIDATION_MAX_ATTEMPTS", 2))

    def validate(self) -> bool:
        if self.timeout <= 0:
            raise ValueError("VALIDATION_TIMEOUT must be positive")
        if not 0.0 <= self.approval_threshold <= 1.0:
            raise ValueError("VALIDATION_APPROVAL_THRESHOLD must be between 0 and 1")
        if self.max_attempts < 1:
            raise ValueError("VALIDATION_MAX_ATTEMPTS must be at least 1")
        return True


@dataclass
class SessionConfig:
    """
    Session state configuration.

    Attributes:
        history_size: Turns kept in a session's bounded history
        prompt_window: Most recent turns included in generation prompts
        idle_timeout: Seconds without a turn before a session's live state
            is evicted (it resumes from the session store)
    """
    history_size: int = field(default_factory=lambda: get_env_int("SESSION_HISTORY_SIZE", 20))
    prompt_window: int = field(default_factory=lambda: get_env_int("SESSION_PROMPT_WINDOW", 5))
    idle_timeout: float = field(default_factory=lambda: get_env_float("SESSION_IDLE_TIMEOUT", 3600.0))


@dataclass
class CacheConfig:
    """Cache configuration for responder definitions."""
    ttl_seconds: float = field(default_factory=lambda: get_env_float("CACHE_TTL_SECONDS", 300.0))
    max_size: int = field(default_factory=lambda: get_env_int("CACHE_MAX_SIZE", 256))


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        file: Optional log file path
    """
    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE") or None)


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = field(default_factory=lambda: get_env("SERVER_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: get_env_int("SERVER_PORT", 8000))
    cors_origins: List[str] = field(default_factory=lambda: get_env_list("CORS_ORIGINS", "*"))


@dataclass
class Settings:
    """
    Main settings container aggregating all configuration sections.

    Access via the singleton `settings` instance.

    Example:
        from tutor.config import settings

        settings.validation.validate()
        limit = settings.synthesis.max_concurrency
    """
    azure: AzureOpenAIConfig = field(default_factory=AzureOpenAIConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Application-level settings
    app_env: str = field(default_factory=lambda: get_env("APP_ENV", "development"))

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    def validate_all(self) -> bool:
        """
        Validate all configuration sections.

        Returns:
            True if all validations pass

        Raises:
            ValueError: If any validation fails
        """
        self.azure.validate()
        self.routing.validate()
        self.extractor.validate()
        self.synthesis.validate()
        self.validation.validate()
        return True


# Singleton settings instance
settings = Settings()
