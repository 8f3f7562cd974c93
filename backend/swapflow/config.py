"""
Application configuration and settings.
"""

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Generation providers
    fal_api_key: str = ""
    fal_queue_url: str = "https://queue.fal.run"
    kling_api_key: str = ""
    kling_api_url: str = "https://api.klingai.com"
    request_timeout: float = 60.0  # Per HTTP call to a provider
    submit_timeout: float = 120.0  # Per submission call

    # Retry executor
    retry_max_attempts: int = 3
    retry_base_delay: float = 2.0  # Linear: 2s, 4s, 6s

    # Jobs
    max_log_lines: int = 200
    stuck_threshold_minutes: int = 60
    analysis_batch_size: int = 5
    retry_from_failed_stage: bool = False
    upscale_method: str = "clarity"

    # Paths
    config_dir: Path = Path("config")

    # Logging
    log_level: str = "INFO"
    log_format: str = "structured"  # "simple" or "structured"

    # Per-module log levels (optional overrides)
    log_level_providers: str | None = None
    log_level_orchestration: str | None = None
    log_level_stages: str | None = None
    log_level_jobs: str | None = None
    log_level_api: str | None = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_polling_overrides(settings: Settings | None = None) -> dict:
    """
    Load per-stage polling overrides from config/polling.yaml.

    The file is optional. Expected shape:

        defaults:
          slow: {interval_seconds: 10, max_attempts: 360}
        stages:
          synthesize: {interval_seconds: 8, max_attempts: 200}

    Args:
        settings: Optional settings instance

    Returns:
        Overrides dictionary ({} when the file is absent or empty)
    """
    if settings is None:
        settings = get_settings()

    polling_path = settings.config_dir / "polling.yaml"
    if not polling_path.exists():
        return {}

    with open(polling_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
