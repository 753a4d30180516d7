from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str = "postgresql://localhost:5432/settlement"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # Payment processor settings
    PAYMENT_PROCESSOR_BASE_URL: str = "http://localhost:8100/v1"
    PAYMENT_PROCESSOR_API_KEY: str | None = None
    PAYMENT_PROCESSOR_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_PROCESSOR_MAX_RETRIES: int = 3
    DEFAULT_CURRENCY: str = "usd"

    # Webhook secrets (HMAC-SHA256 over the raw body)
    MEETING_WEBHOOK_SECRET: str | None = None
    EMAIL_SCAN_WEBHOOK_SECRET: str | None = None
    FEEDBACK_WEBHOOK_SECRET: str | None = None

    # Verification thresholds
    MIN_MEETING_PARTICIPANTS: int = 2
    MIN_MEETING_DURATION_MINUTES: int = 10

    # Referral payout policy (0 disables the check)
    REFERRAL_MAX_REWARDS_PER_PROFESSIONAL: int = 0
    REFERRAL_COOLDOWN_DAYS: int = 0

    # Settlement concurrency
    CAS_MAX_ATTEMPTS: int = 5
    RECONCILE_INTERVAL_SECONDS: int = 300
    RECONCILE_MIN_AGE_SECONDS: int = 60

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config

    def webhook_secret(self, source: str) -> str | None:
        """Resolve the signing secret for a webhook source."""
        return {
            "meeting": self.MEETING_WEBHOOK_SECRET,
            "email_scan": self.EMAIL_SCAN_WEBHOOK_SECRET,
            "feedback": self.FEEDBACK_WEBHOOK_SECRET,
        }.get(source)


settings = Settings()
