"""Settlement ledger configuration loaded from environment variables"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from SETTLEMENT_* environment variables (or a local .env)"""

    # Database
    DATABASE_URL: str = "sqlite:///./settlement.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # History pagination
    HISTORY_DEFAULT_LIMIT: int = 10
    HISTORY_MAX_LIMIT: int = 100

    # Summary
    RECENT_PAYMENTS_LIMIT: int = 5

    # Reconciliation
    STALE_PENDING_HOURS: int = 72

    # Shared secret for the order-processing and settlement collaborators.
    # Empty disables the internal routes.
    INTERNAL_API_TOKEN: str = ""

    CORS_ORIGINS: list[str] = ["*"]

    model_config = SettingsConfigDict(
        env_prefix="SETTLEMENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("HISTORY_DEFAULT_LIMIT", "HISTORY_MAX_LIMIT", "RECENT_PAYMENTS_LIMIT")
    @classmethod
    def check_positive(cls, v):
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


settings = Settings()
