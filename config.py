from __future__ import annotations
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "hex"

    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    # seconds, applied to every gateway call
    GATEWAY_TIMEOUT: float = 15.0
    CURRENCY: str = "INR"

    # Super admin plus any extra allow-listed emails; the admins collection is checked after these
    ADMIN_MAILID: Optional[str] = None
    ADMIN_EMAILS: list[str] = []

    # Set by the upstream auth proxy once a session is established
    USER_EMAIL_HEADER: str = "X-User-Email"

    INITIAL_ORDER_STATUS: str = "confirmed"
    CANCELLATION_MIN_DAYS: int = 3
    DELIVERY_DAYS_MIN: int = 7
    DELIVERY_DAYS_MAX: int = 10
    VERIFY_PAYMENT_SIGNATURE: bool = True

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]
    PORT: int = 8000


settings = Settings()


def get_settings() -> Settings:
    return settings
