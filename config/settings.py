"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Missionary Meal Scheduler"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str
    APP_URL: str = "http://localhost:5000"

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_POOL_TIMEOUT: int = 30
    DB_ECHO: bool = False

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes
    REMINDER_DEDUP_TTL: int = 60 * 60 * 24 * 8

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # ── Email (Resend) ───────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@missionarymeals.org"
    EMAIL_FROM_NAME: str = "Ward Missionary Meal Scheduler"

    # ── WhatsApp Business (Cloud API) ────────────────────────
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v18.0"

    # ── Twilio (legacy SMS) ──────────────────────────────────
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    SMS_COST_PER_SEGMENT: float = 0.0079

    # ── Facebook Messenger (legacy) ──────────────────────────
    MESSENGER_PAGE_ACCESS_TOKEN: str = ""
    MESSENGER_API_VERSION: str = "v18.0"

    # ── Provider resilience ──────────────────────────────────
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    PROVIDER_BREAKER_FAIL_MAX: int = 5
    PROVIDER_BREAKER_RESET_SECONDS: int = 60

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:5000,http://localhost:5173"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    SCHEDULER_TIMEZONE: str = "America/Chicago"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 120

    # ── Business Config ──────────────────────────────────────
    ALLOWED_MISSIONARY_EMAIL_DOMAIN: str = "missionary.org"
    EMAIL_VERIFICATION_TTL_MINUTES: int = 10
    CONSENT_RESEND_HOURS: int = 24
    ACCESS_CODE_MIN_LOOKUP_LENGTH: int = 10
    INACTIVE_MISSIONARY_RETENTION_MONTHS: int = 25
    ADMIN_NOTIFICATION_EMAIL: Optional[str] = None

    @field_validator("SMS_COST_PER_SEGMENT")
    @classmethod
    def cost_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("SMS_COST_PER_SEGMENT cannot be negative")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, shared by the app, workers and tests."""
    return Settings()


settings = get_settings()
