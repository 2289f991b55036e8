"""Checkout verification for the post-payment success page.

Webhooks are the source of truth; this path only re-reads the checkout from
the provider, nudges the synchronizer, and reports what the ledger holds.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from payledger.db.billing_tables import OrderRow, SubscriptionRow
from payledger.db.repository import BillingRepository
from payledger.payments.constants import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    OrderStatus,
    OrderType,
)
from payledger.providers.base import PaymentProviderAdapter, ProviderCheckout
from payledger.services.sync import SubscriptionSynchronizer

logger = logging.getLogger(__name__)

PENDING_SUBSCRIPTION_MESSAGE = "Payment successful! Subscription activation may take a moment. Please refresh shortly."
PENDING_ORDER_MESSAGE = "Payment successful! Order confirmation may take a moment. Please refresh shortly."


class VerificationError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def subscription_response(subscription: SubscriptionRow) -> dict[str, Any]:
    metadata = subscription.metadata_json or {}
    if subscription.status in ACTIVE_SUBSCRIPTION_STATUSES:
        return {
            "subscriptionId": subscription.id,
            "planName": metadata.get("planName"),
            "planId": subscription.plan_id,
            "status": subscription.status,
            "message": "Subscription verified and active.",
        }
    if subscription.status == "canceled":
        raise VerificationError(
            409, "Subscription was canceled. Maybe your charge was refunded. Please contact support.",
        )
    return {
        "status": subscription.status,
        "message": (
            "Subscription found but not active yet. Please allow a few moments and refresh, "
            "or contact support if the problem persists."
        ),
    }


def order_response(order: OrderRow) -> dict[str, Any]:
    metadata = order.metadata_json or {}
    if order.status == OrderStatus.SUCCEEDED.value:
        return {
            "orderId": order.id,
            "planName": metadata.get("planName"),
            "planId": order.plan_id,
            "message": "Payment verified and order confirmed.",
        }
    if order.status in (OrderStatus.REFUNDED.value, OrderStatus.PARTIALLY_REFUNDED.value):
        raise VerificationError(
            409, "Payment was refunded. Maybe your charge was refunded. Please contact support.",
        )
    return {
        "status": order.status,
        "message": (
            "Payment recorded but not finalized yet. Please refresh in a moment, "
            "or contact support if the problem persists."
        ),
    }


class PaymentVerifier:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        synchronizer: SubscriptionSynchronizer,
    ):
        self.session_factory = session_factory
        self.synchronizer = synchronizer

    async def verify(self, adapter: PaymentProviderAdapter, checkout_id: str, user_id: str) -> dict[str, Any]:
        checkout = await adapter.fetch_checkout(checkout_id)

        if checkout.user_id and checkout.user_id != user_id:
            logger.warning(
                "User ID mismatch for %s checkout %s. Auth user: %s, metadata user: %s",
                adapter.provider.value, checkout_id, user_id, checkout.user_id,
            )
            raise VerificationError(403, "User ID mismatch.")

        if not checkout.is_complete:
            raise VerificationError(400, f"Checkout status is not complete ({checkout.status})")

        if checkout.mode == "subscription":
            return await self._verify_subscription(adapter, checkout, user_id)
        return await self._verify_payment(adapter, checkout, user_id)

    async def _verify_subscription(
        self, adapter: PaymentProviderAdapter, checkout: ProviderCheckout, user_id: str,
    ) -> dict[str, Any]:
        if not checkout.subscription_id:
            raise VerificationError(500, "Could not verify subscription details.")

        try:
            await self.synchronizer.sync(adapter, checkout.subscription_id, metadata=checkout.metadata)
        except Exception:
            logger.exception(
                "Subscription sync failed while verifying %s checkout %s", adapter.provider.value, checkout.id,
            )

        async with self.session_factory() as session:
            subscription = await BillingRepository(session).find_user_subscription(
                checkout.subscription_id, user_id,
            )
        if subscription is None:
            logger.warning(
                "%s subscription %s not in DB for user %s yet — webhook pending",
                adapter.provider.value, checkout.subscription_id, user_id,
            )
            return {"message": PENDING_SUBSCRIPTION_MESSAGE}
        return subscription_response(subscription)

    async def _verify_payment(
        self, adapter: PaymentProviderAdapter, checkout: ProviderCheckout, user_id: str,
    ) -> dict[str, Any]:
        if not checkout.is_paid:
            raise VerificationError(400, "Payment status is not paid")
        if not checkout.order_reference:
            return {"message": PENDING_ORDER_MESSAGE}

        async with self.session_factory() as session:
            order = await BillingRepository(session).find_user_order(
                adapter.provider.value, checkout.order_reference, user_id, OrderType.ONE_TIME_PURCHASE.value,
            )
        if order is None:
            logger.warning(
                "%s order %s not found for user %s — webhook pending",
                adapter.provider.value, checkout.order_reference, user_id,
            )
            return {"message": PENDING_ORDER_MESSAGE}
        return order_response(order)
