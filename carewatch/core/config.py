from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    PROJECT_NAME: str = "CareWatch Alerts"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = ""  # local, dev, prod (from .env)

    # MongoDB (from .env, leave empty to run on the in-memory store)
    MONGODB_URL: str = ""
    MONGODB_DB_NAME: str = "carewatch"

    # CORS (from .env, comma-separated)
    BACKEND_CORS_ORIGINS: List[str] = []

    # Logging & Sentry
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None

    # Security (from .env)
    SECRET_KEY: str = ""
    INGEST_WEBHOOK_SECRET: str | None = None

    # Alert policy defaults, overridable through ALERT_POLICY_FILE
    ALERT_POLICY_FILE: str | None = None
    ALERT_DEDUP_WINDOW_SECONDS: int = 300
    ALERT_CLOCK_SKEW_TOLERANCE_SECONDS: int = 120
    ALERT_ESCALATION_TIMEOUT_SECONDS: int = 600
    DELIVERY_TIMEOUT_SECONDS: float = 10.0
    DELIVERY_RETRY_BASE_SECONDS: int = 30
    DELIVERY_RETRY_FACTOR: int = 2
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_STALE_AFTER_SECONDS: int = 120

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: float = 5.0

    # Recipient directory seed (JSON), used when MongoDB is not configured
    CARE_RELATIONSHIPS_FILE: str | None = None

    # Email channel (Resend)
    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_FROM: str = "CareWatch <alerts@carewatch.app>"

    # Bot messaging channel (Telegram)
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_API_URL: str = "https://api.telegram.org"

    # Business messaging channel (WhatsApp through Evolution API)
    EVOLUTION_BASE_URL: str | None = None
    EVOLUTION_API_KEY: str | None = None
    EVOLUTION_INSTANCE_NAME: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()
