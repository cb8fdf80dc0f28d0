"""Application configuration using pydantic-settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Discord
    discord_token: str = Field(default="", alias="DISCORD_TOKEN")

    # Database
    database_path: str = Field(default="pactes.db", alias="DATABASE_PATH")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Riot API
    riot_api_key: str = Field(default="", alias="RIOT_API_KEY")
    riot_platform: str = Field(default="euw1", alias="RIOT_PLATFORM")
    riot_region: str = Field(default="europe", alias="RIOT_REGION")
    riot_timeout_seconds: float = Field(default=10.0, alias="RIOT_TIMEOUT_SECONDS")
    riot_max_attempts: int = Field(default=3, alias="RIOT_MAX_ATTEMPTS")
    riot_backoff_base_seconds: float = Field(default=1.0, alias="RIOT_BACKOFF_BASE_SECONDS")
    riot_backoff_max_seconds: float = Field(default=30.0, alias="RIOT_BACKOFF_MAX_SECONDS")
    remake_threshold_seconds: int = Field(default=300, alias="REMAKE_THRESHOLD_SECONDS")
    match_lookback: int = Field(default=5, alias="MATCH_LOOKBACK")

    # Polling
    poll_interval_seconds: float = Field(default=10.0, alias="POLL_INTERVAL_SECONDS")
    check_interval_minutes: float = Field(default=0.5, alias="CHECK_INTERVAL_MINUTES")
    result_min_delay_seconds: int = Field(default=45, alias="RESULT_MIN_DELAY_SECONDS")
    result_grace_seconds: int = Field(default=600, alias="RESULT_GRACE_SECONDS")
    result_max_empty_polls: int = Field(default=20, alias="RESULT_MAX_EMPTY_POLLS")
    error_reset_threshold: int = Field(default=5, alias="ERROR_RESET_THRESHOLD")

    # Pacte rules
    pacte_duration_hours: int = Field(default=24, alias="PACTE_DURATION_HOURS")
    warning_window_hours: int = Field(default=2, alias="WARNING_WINDOW_HOURS")
    signature_window_minutes: int = Field(default=5, alias="SIGNATURE_WINDOW_MINUTES")
    max_participants: int = Field(default=5, alias="MAX_PARTICIPANTS")
    kick_malus_multiplier: float = Field(default=1.5, alias="KICK_MALUS_MULTIPLIER")

    # Match history
    match_max_age_hours: int = Field(default=2, alias="MATCH_MAX_AGE_HOURS")
    match_history_retention_days: int = Field(default=30, alias="MATCH_HISTORY_RETENTION_DAYS")
    housekeeping_interval_minutes: int = Field(default=5, alias="HOUSEKEEPING_INTERVAL_MINUTES")


# Global settings instance
settings = Settings()


# Backwards compatibility - expose as Config class with uppercase attributes
class Config:
    """Backwards-compatible config interface."""

    DISCORD_TOKEN = settings.discord_token
    DATABASE_PATH = settings.database_path
    LOG_LEVEL = settings.log_level.upper()
    RIOT_API_KEY = settings.riot_api_key
    RIOT_PLATFORM = settings.riot_platform
    RIOT_REGION = settings.riot_region
    RIOT_TIMEOUT_SECONDS = settings.riot_timeout_seconds
    RIOT_MAX_ATTEMPTS = settings.riot_max_attempts
    RIOT_BACKOFF_BASE_SECONDS = settings.riot_backoff_base_seconds
    RIOT_BACKOFF_MAX_SECONDS = settings.riot_backoff_max_seconds
    REMAKE_THRESHOLD_SECONDS = settings.remake_threshold_seconds
    MATCH_LOOKBACK = settings.match_lookback
    POLL_INTERVAL_SECONDS = settings.poll_interval_seconds
    CHECK_INTERVAL_MINUTES = settings.check_interval_minutes
    RESULT_MIN_DELAY_SECONDS = settings.result_min_delay_seconds
    RESULT_GRACE_SECONDS = settings.result_grace_seconds
    RESULT_MAX_EMPTY_POLLS = settings.result_max_empty_polls
    ERROR_RESET_THRESHOLD = settings.error_reset_threshold
    PACTE_DURATION_HOURS = settings.pacte_duration_hours
    WARNING_WINDOW_HOURS = settings.warning_window_hours
    SIGNATURE_WINDOW_MINUTES = settings.signature_window_minutes
    MAX_PARTICIPANTS = settings.max_participants
    KICK_MALUS_MULTIPLIER = settings.kick_malus_multiplier
    MATCH_MAX_AGE_HOURS = settings.match_max_age_hours
    MATCH_HISTORY_RETENTION_DAYS = settings.match_history_retention_days
    HOUSEKEEPING_INTERVAL_MINUTES = settings.housekeeping_interval_minutes
