from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite:///tracker.db", validation_alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", validation_alias="REDIS_URL")
    api_title: str = Field("Exchange Account Tracker API", validation_alias="API_TITLE")
    access_token_expire_minutes: int = Field(15, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    refresh_token_expire_minutes: int = Field(
        60 * 24 * 7, validation_alias="REFRESH_TOKEN_EXPIRE_MINUTES"
    )
    jwt_secret: str = Field("secret", validation_alias="JWT_SECRET")
    jwt_algorithm: str = Field("HS256", validation_alias="JWT_ALGORITHM")
    auth_rate_limit: str = Field("5/minute", validation_alias="AUTH_RATE_LIMIT")
    # Seconds a single push may take before the channel is treated as dead
    push_timeout_seconds: float = Field(5.0, validation_alias="PUSH_TIMEOUT_SECONDS")
    notification_retention_days: int = Field(30, validation_alias="NOTIFICATION_RETENTION_DAYS")
    purge_frequency: int = Field(60 * 60 * 24, validation_alias="PURGE_FREQUENCY")


settings = Settings()
