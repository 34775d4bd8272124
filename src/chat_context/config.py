"""Configuration for the chat context service."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-based configuration (variables prefixed with CHAT_CONTEXT_)."""

    model_config = SettingsConfigDict(env_prefix="CHAT_CONTEXT_", env_file=".env", extra="ignore")

    # LLM
    gemini_api_key: str = ""
    default_model: str = "gemini-2.5-flash"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Request queue (per-conversation single flight)
    max_concurrent_turns: int = 10
    turn_timeout_seconds: float = 120.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
