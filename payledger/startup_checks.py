"""Startup validation — catch billing misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)

_DEFAULT_JWT_SECRET = "payledger-dev-secret-change-in-prod"
_FRAUD_ACTIONS = {"refund", "email"}


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    if is_prod and settings.JWT_SECRET == _DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    # Stripe
    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY not set — Stripe API lookups disabled")
    if not settings.STRIPE_WEBHOOK_SECRET:
        warnings.append("STRIPE_WEBHOOK_SECRET not set — Stripe webhooks will be rejected")

    # Creem
    if not settings.CREEM_API_KEY:
        warnings.append("CREEM_API_KEY not set — Creem API lookups disabled")
    if not settings.CREEM_WEBHOOK_SECRET:
        warnings.append("CREEM_WEBHOOK_SECRET not set — Creem webhooks will be rejected")

    fraud_actions = {
        a.strip().lower()
        for a in settings.STRIPE_RADAR_EARLY_FRAUD_WARNING_TYPE.split(",")
        if a.strip()
    }
    unknown = fraud_actions - _FRAUD_ACTIONS
    if unknown:
        warnings.append(
            f"STRIPE_RADAR_EARLY_FRAUD_WARNING_TYPE has unknown actions: {', '.join(sorted(unknown))}"
        )

    if not settings.EMAIL_API_URL:
        warnings.append("EMAIL_API_URL not set — billing notifications are logged only")
    elif not settings.ADMIN_EMAIL:
        warnings.append("ADMIN_EMAIL not set — operator alerts have no recipient")

    if settings.CREDIT_RETRY_ATTEMPTS < 1:
        warnings.append("CREDIT_RETRY_ATTEMPTS < 1 — credit mutations will run once")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
