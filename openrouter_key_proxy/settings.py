from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "deepseek/deepseek-chat-v3-0324:free"
    http_referer: str = "https://openrouter-apikey-manager.workers.dev"
    app_title: str = "OpenRouter API Key Manager"
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    health_check_interval_seconds: float = 300.0
    health_probe_timeout_seconds: float = 10.0
    health_check_on_add: bool = True
    store_backend: Literal["memory", "yaml", "redis"] = "memory"
    store_path: str = "data/keyproxy_store.yaml"
    redis_url: str | None = None
    redis_key_prefix: str = "keyproxy:"
    admin_session_secret: str | None = None
    admin_session_ttl_seconds: int = 12 * 60 * 60
    # Read once when the app module is imported; CORS middleware is fixed before startup.
    cors_allow_origins: str = "*"
    preset_admin_password: str | None = None
    preset_api_keys: str = ""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def cors_allow_origins_list(self) -> list[str]:
        return _split_csv(self.cors_allow_origins) or ["*"]

    @property
    def preset_api_keys_list(self) -> list[str]:
        return _split_csv(self.preset_api_keys)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
