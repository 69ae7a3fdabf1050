"""Application settings via pydantic-settings."""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger configuration loaded from environment variables with LEDGER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
    )

    app_version: str = "1.0.0"
    database_url: str = "sqlite:///./ledger.db"
    database_echo: bool = False
    sqlite_busy_timeout_seconds: float = 15.0

    currency: str = "GH"
    default_referral_percentage: Decimal = Decimal("5.00")

    admin_token: Optional[str] = None
    # Without a token, admin routes are refused unless this is set (development only)
    admin_open: bool = False
    cors_origins: list[str] = ["*"]

    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
