from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0
    system_prompt: str | None = None

    cors_origins: str = "*"

    redis_url: str | None = None
    sessions_namespace: str = "sessions"

    typewriter_speed_ms: int = 20  # per character
    typewriter_startup_delay_ms: int = 100
    autoscroll_threshold: int = 50  # distance units from bottom

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
