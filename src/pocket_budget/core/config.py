from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./pocket_budget.db"
    local_storage_path: Path = Path(".local_storage")

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    receipt_ai_timeout_seconds: float = 60.0

    max_image_count: int = 5
    max_image_bytes: int = 10 * 1024 * 1024
    fallback_category_name: str = "Other"
    ingestion_session_idle_seconds: float = 30 * 60


settings = Settings()
