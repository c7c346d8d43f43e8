"""Configuration settings for the gateway."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="LLMGATE_", env_file=".env")

    # Server
    host: str = "127.0.0.1"  # Use LLMGATE_HOST=0.0.0.0 for Docker
    port: int = 8080
    debug: bool = False

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0
    redis_pool_size: int = 50

    # Provider
    provider_api_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 60.0

    # Models, fallbacks tried in order while the breaker is open
    default_model: str = "gemini-2.0-flash"
    fallback_models: list[str] = ["gemini-2.0-flash-lite", "gemini-1.5-flash"]

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: float = 60.0

    # Response cache
    default_cache_ttl_seconds: int = 3600

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Metrics
    metrics_enabled: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
