"""Settings via pydantic-settings with CONCIERGE_ env prefix.

Database and Anthropic credentials are read from their conventional unprefixed
names (DB_HOST, ANTHROPIC_API_KEY, ...) so they can be shared with other
processes; everything else is CONCIERGE_*.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONCIERGE_", env_file=".env")

    # Postgres
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("concierge", validation_alias="DB_USER")
    db_password: str = Field("concierge_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("concierge", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    title_model: str = "claude-haiku-4-5"
    max_tokens: int = 8192  # Ceiling for models missing from the limits table
    max_iterations: int = 15  # Model rounds per exchange
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    web_search_max_uses: int = 5

    # Assistant
    owner_name: str = "the dashboard owner"
    history_limit: int = 40
    auto_title: bool = True

    # Chat rate limiting (sliding window per caller)
    chat_rate_limit: int = 10
    chat_rate_window: int = 60  # seconds

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.chat_rate_limit < 1 or self.chat_rate_window < 1:
            raise ValueError("chat_rate_limit and chat_rate_window must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
