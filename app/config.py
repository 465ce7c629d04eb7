from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    APP_ENV: Literal["development", "staging", "production"] = Field(
        default="development"
    )
    DEBUG: bool = Field(default=True)
    LOG_LEVEL: str = Field(default="INFO")
    FRONTEND_URL: Optional[str] = Field(default=None)

    DATABASE_URL: Optional[str] = Field(default=None)
    DB_POOL_SIZE: int = Field(default=10)
    DB_POOL_TIMEOUT_SECONDS: int = Field(default=30)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=30000)
    REDIS_URL: Optional[str] = Field(default=None)

    JWT_SECRET: Optional[str] = Field(default=None)
    JWT_ALGORITHM: Optional[str] = Field(default=None)

    # Minute allowances
    FREE_TIER_MINUTES: float = Field(default=30)
    DEFAULT_SUBSCRIPTION_MINUTES: float = Field(default=3000)
    PLAN_MINUTES: dict[str, float] = Field(default_factory=lambda: {"pro": 3000})
    DEFAULT_PAID_PLAN: str = Field(default="pro")

    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_TOLERANCE: int = Field(default=300)
    RECONCILE_INTERVAL_SECONDS: int = Field(default=3600)

    MINIO_ENDPOINT: Optional[str] = Field(default=None)
    MINIO_ACCESS_KEY: Optional[str] = Field(default=None)
    MINIO_SECRET_KEY: Optional[str] = Field(default=None)
    MINIO_BUCKET: Optional[str] = Field(default=None)
    MINIO_USE_SSL: Optional[bool] = Field(default=None)
    MINIO_PRESIGN_EXPIRES: int = Field(default=3600)

    DEEPGRAM_API_KEY: Optional[str] = Field(default=None)
    DEEPGRAM_BASE_URL: str = Field(default="https://api.deepgram.com/v1/listen")
    DEEPGRAM_MODEL: str = Field(default="whisper-large")
    TRANSCRIPTION_CALLBACK_URL: Optional[str] = Field(default=None)
    # appended to the callback URL as ?token= and required on the callback route
    TRANSCRIPTION_CALLBACK_TOKEN: Optional[str] = Field(default=None)

    TWILIO_ACCOUNT_SID: Optional[str] = Field(default=None)
    TWILIO_AUTH_TOKEN: Optional[str] = Field(default=None)
    TWILIO_WHATSAPP_NUMBER: Optional[str] = Field(default=None)
    # public URL Twilio posts to; the signature covers it
    TWILIO_WEBHOOK_URL: Optional[str] = Field(default=None)

    UPLOAD_ALLOWED_EXTENSIONS: Optional[str] = Field(default="mp3,wav,m4a,ogg,opus,webm,mp4")
    UPLOAD_MAX_SIZE_BYTES: Optional[int] = Field(default=200 * 1024 * 1024)

    def minutes_for_plan(self, plan: Optional[str]) -> float:
        if plan and plan in self.PLAN_MINUTES:
            return float(self.PLAN_MINUTES[plan])
        return float(self.DEFAULT_SUBSCRIPTION_MINUTES)


settings = Settings()
