# chatrelay/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore", populate_by_name=True
    )

    app_env: str = "dev"
    app_name: str = "Chat Relay"
    app_host: str = "127.0.0.1"
    app_port: int = 3000

    log_level: str = "INFO"
    db_url: str = "sqlite+aiosqlite:///data/app.db"

    # Completion provider (OpenAI-compatible)
    provider_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    provider_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    provider_model: str = Field(default="gpt-3.5-turbo", validation_alias="OPENAI_MODEL")
    provider_temperature: float = Field(default=0.7, validation_alias="OPENAI_TEMPERATURE")
    provider_timeout_sec: float = Field(default=60.0, validation_alias="PROVIDER_TIMEOUT_SEC")

    # Context
    chat_history_limit: int = Field(default=20, validation_alias="CHAT_HISTORY_LIMIT")
    thread_title_max_chars: int = Field(default=255, validation_alias="THREAD_TITLE_MAX_CHARS")
    default_system_prompt: str = Field(
        default="You are a helpful AI assistant.",
        validation_alias="DEFAULT_SYSTEM_PROMPT",
    )

    # Auth
    access_token_secret: str = Field(default="your-access-token-secret", validation_alias="ACCESS_TOKEN_SECRET")
    jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")

    cors_allowed_origins: str = Field(
        default="http://127.0.0.1:5173,http://localhost:5173", validation_alias="CORS_ALLOWED_ORIGINS"
    )

    # Mock provider pacing for /api/chat/stream-test
    mock_stream_delay_min_ms: int = Field(default=20, validation_alias="MOCK_STREAM_DELAY_MIN_MS")
    mock_stream_delay_max_ms: int = Field(default=50, validation_alias="MOCK_STREAM_DELAY_MAX_MS")

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]

    @property
    def db_dialect(self) -> str:
        scheme = self.db_url.split(":", 1)[0]
        return scheme.split("+", 1)[0]


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
