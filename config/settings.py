"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///payledger.db")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    # "" (off) | "require" (encrypted, unverified) | "verify"
    DATABASE_SSL = os.getenv("DATABASE_SSL", "")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "payledger-dev-secret-change-in-prod")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    # Comma-separated actions on radar early fraud warnings: "refund", "email"
    STRIPE_RADAR_EARLY_FRAUD_WARNING_TYPE = os.getenv("STRIPE_RADAR_EARLY_FRAUD_WARNING_TYPE", "")

    # Creem
    CREEM_API_KEY = os.getenv("CREEM_API_KEY", "")
    CREEM_WEBHOOK_SECRET = os.getenv("CREEM_WEBHOOK_SECRET", "")
    CREEM_API_BASE_URL = os.getenv("CREEM_API_BASE_URL", "https://api.creem.io/v1")

    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd")

    # Transactional email (operator alerts + user notices)
    EMAIL_API_URL = os.getenv("EMAIL_API_URL", "")
    EMAIL_API_KEY = os.getenv("EMAIL_API_KEY", "")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "billing@payledger.local")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@payledger.local")

    # Credit ledger
    CREDIT_RETRY_ATTEMPTS = int(os.getenv("CREDIT_RETRY_ATTEMPTS", "3"))
    YEARLY_ALLOCATION_INTERVAL_HOURS = int(os.getenv("YEARLY_ALLOCATION_INTERVAL_HOURS", "6"))

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
