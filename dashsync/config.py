from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the sync and dashboard service."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    store_backend: str = "sqlite"  # options: memory, sqlite
    database_path: str = "data/dashsync.db"
    sync_batch_size: int = 1000
    group_limit: int = 20
    time_series_limit: int = 60
    custom_chart_limit: int = 100
    discovery_sample_size: int = 5
    growth_window_days: int = 30
    http_timeout_seconds: float = 30.0
    ai_api_key: Optional[str] = None
    ai_base_url: str = "https://api.openai.com/v1"
    ai_model: str = "gpt-4o-mini"
    log_level: str = "INFO"


settings = Settings()
