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
    APP_NAME: str = "MindWeal Scheduling API"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENABLE_METRICS: bool = True

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
    REDIS_CACHE_TTL: int = 300          # 5 minutes
    AVAILABILITY_CACHE_TTL: int = 60    # slot lists go stale quickly

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Google Calendar (service account) ────────────────────
    GOOGLE_SERVICE_ACCOUNT_EMAIL: str = ""
    GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY: str = ""
    GOOGLE_CALENDAR_ID: str = "primary"
    GOOGLE_API_TIMEOUT_SECONDS: float = 10.0

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@mindweal.in"
    EMAIL_FROM_NAME: str = "MindWeal"

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Booking Config ───────────────────────────────────────
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"
    DEFAULT_SESSION_DURATION: int = 60
    DEFAULT_BUFFER_TIME: int = 15
    DEFAULT_ADVANCE_BOOKING_DAYS: int = 30
    DEFAULT_MIN_BOOKING_NOTICE_HOURS: int = 24
    MAX_AVAILABILITY_RANGE_DAYS: int = 31
    BOOKING_REFERENCE_PREFIX: str = "MW"
    BOOKING_REFERENCE_LENGTH: int = 8
    BOOKING_REFERENCE_MAX_ATTEMPTS: int = 5
    REMINDER_HOURS_BEFORE: int = 24
    CLINIC_ADDRESS: str = "Mindweal Clinic, New Delhi"

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def google_calendar_configured(self) -> bool:
        return bool(self.GOOGLE_SERVICE_ACCOUNT_EMAIL and self.GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance. Call this everywhere."""
    return Settings()


settings = get_settings()
