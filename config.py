"""Environment-driven settings.

Values are read once at import (after load_dotenv) and applied to the Flask
app by create_app(). Anything here can be overridden per app instance.
"""

import os

from dotenv import load_dotenv

load_dotenv()


DEV_SECRET_KEY = "dev-secret-key-change-me"


def _database_url() -> str:
    url = os.getenv("DATABASE_URL") or "sqlite:///employnet.db"
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def is_production() -> bool:
    return bool(os.getenv("RENDER")) or os.getenv("FLASK_ENV") == "production"


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY") or DEV_SECRET_KEY

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }

    # Optional. Without it the app runs on the in-process cache and the
    # realtime publisher only logs.
    REDIS_URL = (os.getenv("REDIS_URL") or "").strip() or None

    RATELIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URL", "memory://")
    RATELIMIT_ENABLED = os.getenv("RATELIMIT_ENABLED", "1") == "1"

    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Identity tokens
    IDENTITY_TOKEN_MAX_AGE_SECONDS = int(os.getenv("IDENTITY_TOKEN_MAX_AGE_SECONDS", str(7 * 24 * 3600)))

    # Cache-aside expirations (seconds)
    CACHE_TTL_SHORT = int(os.getenv("CACHE_TTL_SHORT", "300"))
    CACHE_TTL_LONG = int(os.getenv("CACHE_TTL_LONG", "600"))

    # Outbound email
    SMTP_HOST = os.getenv("SMTP_HOST", "")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "Employ-Net <noreply@employ-net.com>")
    ADMIN_NOTIFICATION_EMAIL = os.getenv("ADMIN_NOTIFICATION_EMAIL", "support@employ-net.com")

    # Webhook receivers. An empty secret rejects every delivery.
    MUX_WEBHOOK_SECRET = os.getenv("MUX_WEBHOOK_SECRET", "")
    TYPEFORM_WEBHOOK_SECRET = os.getenv("TYPEFORM_WEBHOOK_SECRET", "")
    IDENTITY_WEBHOOK_SECRET = os.getenv("IDENTITY_WEBHOOK_SECRET", "")
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
