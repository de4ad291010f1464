"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "design-orchestrator"
    app_env: str = "dev"
    database_url: str = ""
    design_webhook_url: str = "http://127.0.0.1:8010/design-tasks"
    design_webhook_secret: str = ""
    public_base_url: str = "http://127.0.0.1:8000"
    dispatch_timeout_s: float = Field(default=30.0, gt=0)
    dispatch_max_workers: int = Field(default=4, ge=1)
    user_agent: str = "Construction-CRM/1.0"

    model_config = SettingsConfigDict(
        env_prefix="DESIGN_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_webhook_secret(self) -> str:
        return self.design_webhook_secret or os.getenv("DESIGN_WEBHOOK_SECRET", "")

    def callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/webhooks/design-callback"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
