"""Application configuration with secure handling of sensitive values."""

from functools import lru_cache

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the insight apply core.

    Credentials use SecretStr so they never leak through logs, error
    messages, or repr() output.
    """

    # Persistence API (goals, beliefs, triggers, identity, people)
    persistence_api_url: str = "http://localhost:3001"
    persistence_api_token: SecretStr = SecretStr("")
    persistence_timeout: float = 10.0  # seconds per request
    persistence_read_retries: int = 3  # attempts for GETs; writes are never retried

    @field_validator("persistence_api_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Paths are joined as f"{base}/api/...", so drop a trailing slash."""
        return v.rstrip("/")

    # AI extraction (OpenAI-compatible chat endpoint)
    llm_api_key: SecretStr = SecretStr("")
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 2048

    # LLM retry settings
    llm_max_retries: int = 3  # Retries after the first attempt
    llm_retry_base_delay: float = 1.0  # Base delay in seconds for exponential backoff

    # Apply coordination
    # 0 = unbounded; otherwise caps concurrent writes in apply_all()
    apply_max_concurrency: int = 0

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def __repr__(self) -> str:
        """Custom repr that masks sensitive values."""
        safe_fields = {
            "persistence_api_url": self.persistence_api_url,
            "persistence_timeout": self.persistence_timeout,
            "llm_base_url": self.llm_base_url,
            "llm_model": self.llm_model,
            "apply_max_concurrency": self.apply_max_concurrency,
            "log_level": self.log_level,
            "debug": self.debug,
        }
        fields_str = ", ".join(f"{k}={v!r}" for k, v in safe_fields.items())
        return f"Settings({fields_str})"

    def get_persistence_api_token(self) -> str:
        """Safely get the persistence API bearer token."""
        return self.persistence_api_token.get_secret_value()

    def get_llm_api_key(self) -> str:
        """Safely get the LLM API key value."""
        return self.llm_api_key.get_secret_value()


@lru_cache
def get_settings() -> Settings:
    return Settings()
