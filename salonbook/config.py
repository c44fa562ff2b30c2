"""Application configuration loaded from the environment."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///salonbook.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    TESTING = os.environ.get("TESTING") in {"1", "true", "True"}

    # Staff PIN tokens fall back to SECRET_KEY when unset.
    BOOKING_PIN_SECRET = os.environ.get("BOOKING_PIN_SECRET")
    BOOKING_PIN_TOKEN_MAX_AGE = 15 * 60

    # Shared store for holds, rate limits and the availability cache. Unset keeps them in process memory.
    REDIS_URL = os.environ.get("REDIS_URL")

    # 0 disables the availability cache.
    AVAILABILITY_CACHE_TTL_SECONDS = _env_int("AVAILABILITY_CACHE_TTL_SECONDS", 0)

    # External shift planning / messaging control plane
    CONTROL_PLANE_URL = os.environ.get("CONTROL_PLANE_URL")
    CONTROL_PLANE_SMS_URL = os.environ.get("CONTROL_PLANE_SMS_URL")
    CONTROL_PLANE_WHATSAPP_URL = os.environ.get("CONTROL_PLANE_WHATSAPP_URL")
    PROVISION_SECRET = os.environ.get("PROVISION_SECRET")
    SHIFT_PLAN_TIMEOUT_SECONDS = _env_int("SHIFT_PLAN_TIMEOUT_SECONDS", 10)

    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    MAIL_FROM = os.environ.get("MAIL_FROM", "bookings@example.com")

    TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER = os.environ.get("TWILIO_FROM_NUMBER")

    DEFAULT_PHONE_COUNTRY_CODE = os.environ.get("DEFAULT_PHONE_COUNTRY_CODE", "49")

    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret-key"
    BOOKING_PIN_SECRET = "test-pin-secret"
    REDIS_URL = None
    AVAILABILITY_CACHE_TTL_SECONDS = 0
    CONTROL_PLANE_URL = None
    CONTROL_PLANE_SMS_URL = None
    CONTROL_PLANE_WHATSAPP_URL = None
    PROVISION_SECRET = None
    RESEND_API_KEY = None
    TWILIO_ACCOUNT_SID = None
    TWILIO_AUTH_TOKEN = None
    TWILIO_FROM_NUMBER = None
