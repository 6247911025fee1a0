from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Correlation store location (SQLite file keeps records across restarts)
    DATABASE_URL: str = "sqlite:///./sms_wallet.db"

    LOG_LEVEL: str = "INFO"

    # Shared secret used to sign transport callbacks and inbox deliveries.
    # Empty means the service reports itself as not ready.
    CALLBACK_SECRET: str = ""

    # Run one recovery pass in the background when the service starts
    RECOVERY_ON_BOOT: bool = True

    # Number of published events kept for GET /events
    EVENT_BUFFER_SIZE: int = 200


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
