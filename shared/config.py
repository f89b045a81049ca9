"""
Configuration management for medledger
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from MEDLEDGER_* environment variables or a .env file"""

    model_config = SettingsConfigDict(
        env_prefix="MEDLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str = "sqlite:///./medledger.db"
    DATABASE_ECHO: bool = False

    # Occurrence generation
    GENERATION_HORIZON_DAYS: int = 30
    MAX_EVENTS_PER_COMMAND: int = 100

    # Missed-dose sweep
    MISSED_SWEEP_INTERVAL_MINUTES: int = 15
    MISSED_LOOKBACK_HOURS: int = 24
    JOB_TIMEOUT_SECONDS: float = 540.0  # leaves headroom inside the 15-minute cadence

    # Dose actions
    UNDO_WINDOW_SECONDS: int = 30
    CORRECTION_WINDOW_HOURS: int = 24  # 0 disables the upper bound
    DEFAULT_SNOOZE_MINUTES: int = 10
    MAX_SNOOZE_MINUTES: int = 240

    # Grace periods and timezones
    MIDNIGHT_WINDOW_MINUTES: int = 15
    WEEKEND_MULTIPLIER: float = 1.5
    HOLIDAY_MULTIPLIER: float = 2.0
    MULTIPLIER_OVERLAP: str = "max"
    DEFAULT_TIMEZONE: str = "UTC"

    # Adherence patterns
    PATTERN_WINDOW_DAYS: int = 30
    CONSECUTIVE_MISSED_THRESHOLD: int = 3
    LOW_ADHERENCE_DAYS: int = 3
    SEVERITY_LOW_THRESHOLD: float = 0.9
    SEVERITY_MEDIUM_THRESHOLD: float = 0.7
    SEVERITY_HIGH_THRESHOLD: float = 0.5
    PATTERN_DEDUP_HOURS: int = 24

    # Store retries
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY: float = 0.2

    # Drug-name verification
    RXNORM_API_URL: str = "https://rxnav.nlm.nih.gov/REST"
    RXNORM_TIMEOUT_SECONDS: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=settings.LOG_FORMAT)
