"""Configuration and settings management using pydantic-settings."""
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_prefix="PROMPT_CHAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core settings
    env: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Emit structured JSON logs (plain text when false)",
    )

    # Anthropic completion settings
    anthropic_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "PROMPT_CHAIN_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"
        ),
        description="Anthropic API key (not needed for dry runs)",
    )
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com",
        description="Anthropic API base URL",
    )
    anthropic_version: str = Field(
        default="2023-06-01",
        description="Anthropic API version",
    )
    default_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used by steps that do not name one",
    )
    max_tokens_cap: int = Field(
        default=8192,
        description="Hard cap on max_tokens for any completion call",
    )
    request_timeout_s: float = Field(
        default=120.0,
        description="Read timeout for a single completion request",
    )

    # Engine limits
    retry_backoff_base_s: float = Field(
        default=0.5,
        description="First delay between retry attempts (doubles per attempt)",
    )
    retry_backoff_max_s: float = Field(
        default=8.0,
        description="Upper bound for the delay between retry attempts",
    )
    max_step_executions: int = Field(
        default=1000,
        description="Maximum step executions per run (guards cyclic jumps)",
    )
    loop_iteration_warning_threshold: int = Field(
        default=1000,
        description="Loop maxIterations above this value produce a warning",
    )

    @field_validator("max_tokens_cap", "max_step_executions")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that limits are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("retry_backoff_base_s", "retry_backoff_max_s")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("backoff must not be negative")
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
