"""Dependency wiring — provider clients are process-wide singletons, closed on shutdown."""
from __future__ import annotations

from functools import lru_cache
from typing import Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from payledger.db import engine as db_engine
from payledger.payments.credits import CreditManager
from payledger.payments.retry import RetryPolicy
from payledger.providers.creem import CreemClient
from payledger.providers.stripe import StripeClient
from payledger.services.notifications import Notifier
from payledger.services.sync import SubscriptionSynchronizer
from payledger.services.verify import PaymentVerifier
from payledger.webhooks.common import BillingServices, parse_fraud_actions


@lru_cache
def get_stripe_client() -> StripeClient:
    return StripeClient(api_key=settings.STRIPE_SECRET_KEY, base_url=settings.STRIPE_API_BASE)


@lru_cache
def get_creem_client() -> CreemClient:
    return CreemClient(api_key=settings.CREEM_API_KEY, base_url=settings.CREEM_API_BASE_URL)


@lru_cache
def get_notifier() -> Notifier:
    return Notifier(
        api_url=settings.EMAIL_API_URL,
        api_key=settings.EMAIL_API_KEY,
        sender=settings.EMAIL_FROM,
        admin_email=settings.ADMIN_EMAIL,
        support_email=settings.SUPPORT_EMAIL,
    )


def get_session_factory() -> Callable[[], AsyncSession]:
    # Looked up at call time so a swapped engine module attribute is honored
    return db_engine.async_session


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.CREDIT_RETRY_ATTEMPTS)


def build_credit_manager(session_factory: Callable[[], AsyncSession], retry: RetryPolicy | None = None) -> CreditManager:
    return CreditManager(session_factory, retry or get_retry_policy())


def get_billing_services(
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    notifier: Notifier = Depends(get_notifier),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> BillingServices:
    return BillingServices(
        session_factory=session_factory,
        credits=build_credit_manager(session_factory, retry),
        synchronizer=SubscriptionSynchronizer(session_factory),
        notifier=notifier,
        default_currency=settings.DEFAULT_CURRENCY,
        fraud_actions=parse_fraud_actions(settings.STRIPE_RADAR_EARLY_FRAUD_WARNING_TYPE),
    )


def get_payment_verifier(
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
) -> PaymentVerifier:
    return PaymentVerifier(session_factory, SubscriptionSynchronizer(session_factory))


async def close_clients() -> None:
    for factory in (get_stripe_client, get_creem_client):
        if factory.cache_info().currsize:
            await factory().aclose()
        factory.cache_clear()
