"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Wellness Booking Core"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FCM_BREAKER_FAIL_MAX: int = 5
    FCM_BREAKER_RESET_SECONDS: int = 60

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Booking ──────────────────────────────────────────────
    PAYMENT_WINDOW_MINUTES: int = 10
    DEFAULT_SLOT_DURATION_MINUTES: int = 60
    DEFAULT_BREAK_MINUTES: int = 15
    DEFAULT_TIMEZONE: str = "Asia/Karachi"
    DEFAULT_SESSION_AMOUNT: float = 1000.0
    DEFAULT_CURRENCY: str = "PKR"
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300

    # ── Reminders ────────────────────────────────────────────
    REMINDER_SCHEDULER_ENABLED: bool = False
    REMINDER_24H_INTERVAL_SECONDS: int = 1800      # 30 minutes
    REMINDER_1H_INTERVAL_SECONDS: int = 900        # 15 minutes
    REMINDER_PAYMENT_INTERVAL_SECONDS: int = 120   # 2 minutes
    REMINDER_24H_TOLERANCE_MINUTES: int = 5
    REMINDER_1H_TOLERANCE_MINUTES: int = 5
    REMINDER_PAYMENT_LEAD_MINUTES: int = 5
    REMINDER_PAYMENT_TOLERANCE_MINUTES: int = 2
    REMINDER_BATCH_SIZE: int = 100
    REMINDER_SEND_CONCURRENCY: int = 10
    REMINDER_LEDGER_CLEANUP_SECONDS: int = 86400   # 24 hours

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
