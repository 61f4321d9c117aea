from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="RF_", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "RutaFlow"
    environment: str = "development"
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"

    sqlite_path: Path = Path("./data/rutaflow.db")
    export_dir: Path = Path("./data/exports")

    timezone: str = os.getenv("TZ", "America/Mexico_City")

    default_gas_price_per_liter: float = 24.0
    default_km_per_liter: float = 12.0
    default_target_hourly_rate: float = 200.0
    default_target_per_km_rate: float = 8.0
    default_platform_commission: float = 10.0

    acceptable_ratio: float = Field(default=0.75, gt=0, le=1)
    standard_workday_hours: float = Field(default=8.0, gt=0)
    gps_noise_threshold_km: float = Field(default=0.005, ge=0)

    assistant_api_url: str = "https://api.anthropic.com/v1/messages"
    assistant_api_key: Optional[str] = None
    assistant_model: str = "claude-sonnet-4-20250514"
    assistant_timeout: int = 30
    summary_window_days: int = 30

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return str(value or "INFO").strip().upper()

    @computed_field
    def database_url(self) -> str:
        return f"sqlite:///{self.sqlite_path}"


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
settings.export_dir.mkdir(parents=True, exist_ok=True)
