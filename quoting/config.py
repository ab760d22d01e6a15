"""Configuration settings for the quoting engine."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="QUOTING_", env_file=".env", extra="ignore")

    # Storage
    storage_backend: Literal["json", "sql"] = "json"
    data_file: Path = Path("data") / "records.json"
    database_url: str = "sqlite+aiosqlite:///data/quoting.db"
    flush_debounce_seconds: float = 1.0
    record_ttl_days: int = 7

    # Pricing
    quote_validity_days: int = 7
    platform_fee_rate: float = 0.05
    lamports_per_sol: int = 1_000_000_000
    sol_usd_rate: float = 150.0
    default_base_rate: int = 66_666_666  # lamports per hour

    # Input limits
    max_title_length: int = 100
    max_brief_length: int = 500
    max_clarifying_questions: int = 5

    # Human review
    enforce_human_review: bool = True

    # External extractor
    extractor_url: str | None = None
    extractor_timeout_seconds: float = 60.0
    extractor_max_retries: int = 1

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    log_level: str = "INFO"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance
settings = Settings()
