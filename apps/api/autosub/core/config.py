"""Application configuration."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    auth_provider: Literal["mock", "firebase"] = "firebase"
    firebase_project_id: str | None = None
    firebase_audience: str | None = None

    store_backend: Literal["memory", "firestore"] = "memory"
    cache_dir: Path = Path(".autosub/cache")
    cache_encryption_key: str | None = None

    remote_job_base_url: str = "https://queue.fal.run"
    remote_job_endpoint: str = "/fal-ai/workflow-utilities/auto-subtitle"
    remote_job_api_key: str = ""
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    download_timeout_seconds: float = Field(default=600.0, gt=0)
    probe_timeout_seconds: float = Field(default=30.0, gt=0)

    max_file_size_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    max_duration_seconds: float | None = None
    max_retries: int = Field(default=3, ge=0)
    poll_base_interval_seconds: float = Field(default=3.0, gt=0)
    poll_backoff_factor: float = Field(default=1.5, ge=1.0)
    poll_max_interval_seconds: float = Field(default=10.0, gt=0)
    max_processing_seconds: float = Field(default=600.0, gt=0)
    upload_dir: Path = Path(".autosub/uploads")
    output_dir: Path = Path(".autosub/results")

    signup_bonus_credits: int = Field(default=5, ge=0)
    subscription_grant_window_days: int = Field(default=28, gt=0)
    billing_provider: Literal["static", "revenuecat"] = "static"
    revenuecat_api_key: str | None = None
    revenuecat_base_url: str = "https://api.revenuecat.com"

    reconcile_interval_seconds: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="AUTOSUB_", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
