from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # OpenAI-compatible transport
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    temperature: float | None = None

    # Chain budgets
    max_iterations: int = 5
    max_attempts: int = 3

    # Deadlines (seconds)
    model_timeout: float = 60.0
    tool_timeout: float | None = None

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="AICHAIN_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
