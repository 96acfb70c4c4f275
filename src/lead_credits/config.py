"""
Package configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from `LEAD_CREDITS_*` environment variables or `.env`."""

    model_config = SettingsConfigDict(
        env_prefix="LEAD_CREDITS_", env_file=".env", extra="ignore"
    )

    # Store: MongoDB when a URI is configured, in-memory otherwise
    MONGO_URI: str = ""
    MONGO_DB: str = "lead_credits"
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Ledger
    DEFAULT_CREDITS: int = 10
    MAX_CONFLICT_RETRIES: int = 3

    # Earning rules
    REFERRAL_AWARD: int = 5
    AD_REWARD_CREDITS: int = 1
    REFERRAL_CODE_LENGTH: int = 8
    REFERRAL_BASE_URL: str = "http://localhost:8080"
    LEADERBOARD_SIZE: int = 10
    LEADERBOARD_CACHE_TTL_SECONDS: int = 300

    # Gating
    LOOKUP_REQUIRES_LOGIN: bool = True
    ENTITLEMENT_REQUIRES_LOGIN: bool = True

    # Super keys
    DEFAULT_KEY_CREDITS: int = 1000
    DEFAULT_KEY_VALIDITY_DAYS: int = 30
    ADMIN_TOKEN: str = ""


settings = Settings()
