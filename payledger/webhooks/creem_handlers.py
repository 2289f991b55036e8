"""
Creem webhook event handlers
---
Creem events carry ``eventType`` and the affected resource under ``object``.

Handles:
- checkout.completed → one-time purchase order + one-time credits
- subscription.paid → recurring order + subscription credits, then sync
- subscription.active/update/trialing/paused/expired → sync
- subscription.canceled → sync + end-of-term revoke
- refund.created → refund order + credit revocation
"""
from __future__ import annotations

import logging
from typing import Optional

from payledger.db.repository import BillingRepository
from payledger.payments.constants import OrderStatus, OrderType, Provider
from payledger.payments.currency import to_cents, to_currency_amount
from payledger.payments.ledger import (
    create_order_with_idempotency,
    find_original_order_for_refund,
    refund_order_exists,
    update_order_status_after_refund,
)
from payledger.providers.base import id_of
from payledger.providers.creem import CreemClient
from payledger.webhooks.common import (
    BillingServices,
    WebhookProcessingError,
    epoch_ms,
    grant_order_credits,
)

logger = logging.getLogger(__name__)

_SYNC_ONLY_EVENTS = (
    "subscription.active",
    "subscription.update",
    "subscription.trialing",
    "subscription.paused",
    "subscription.expired",
)


def _order_type(billing_type: Optional[str]) -> str:
    """Creem reports ``recurring`` for subscriptions; anything unknown is booked as recurring."""
    try:
        return OrderType(billing_type).value
    except ValueError:
        return OrderType.RECURRING.value


class CreemWebhookHandler:
    def __init__(self, services: BillingServices, client: CreemClient):
        self.services = services
        self.client = client

    async def process(self, payload: dict) -> None:
        event_type = payload.get("eventType", "")
        obj = payload.get("object") or {}

        logger.info("Creem webhook: %s (%s)", event_type, payload.get("id"))

        if event_type == "checkout.completed":
            await self.handle_checkout_completed(obj)

        elif event_type == "subscription.paid":
            await self.handle_subscription_paid(obj)

        elif event_type in _SYNC_ONLY_EVENTS:
            await self.handle_subscription_updated(obj)

        elif event_type == "subscription.canceled":
            await self.handle_subscription_updated(obj, is_ended=True)

        elif event_type == "refund.created":
            await self.handle_refund_created(obj)

        else:
            logger.warning("Unhandled Creem event type: %s", event_type)

    # ── One-time purchases ────────────────────────────────────────────────────

    async def handle_checkout_completed(self, checkout: dict) -> None:
        metadata = checkout.get("metadata") or {}
        order = checkout.get("order") or {}
        user_id = metadata.get("userId")
        plan_id = metadata.get("planId")
        product_id = metadata.get("productId") or id_of(checkout.get("product"))

        if not user_id or not plan_id:
            logger.error("[Creem] Missing critical metadata on checkout %s: %s", checkout.get("id"), metadata)
            return

        if order.get("type") != "onetime":
            # Subscription checkouts are booked from subscription.paid
            return

        order_id = order.get("id")
        if not order_id:
            raise WebhookProcessingError(f"Creem checkout {checkout.get('id')} completed without an order id")

        status = checkout.get("status")
        order_data = {
            "user_id": user_id,
            "payment_reference": order_id,
            "status": OrderStatus.SUCCEEDED.value if status == "completed" else (status or OrderStatus.PENDING.value),
            "order_type": OrderType.ONE_TIME_PURCHASE.value,
            "plan_id": plan_id,
            "product_id": product_id,
            "amount_subtotal": to_currency_amount(order.get("sub_total") or 0),
            "amount_discount": to_currency_amount(order.get("discount_amount") or 0),
            "amount_tax": to_currency_amount(order.get("tax_amount") or 0),
            "amount_total": to_currency_amount(order.get("amount_paid") or 0),
            "currency": order.get("currency") or self.services.default_currency,
            "metadata_json": {
                "creemCheckoutId": checkout.get("id"),
                "creemOrderId": order_id,
                "creemCustomerId": id_of(order.get("customer")),
                "creemProductId": id_of(order.get("product")),
                "productId": product_id,
                **metadata,
            },
        }

        async with self.services.session_factory() as session:
            result = await create_order_with_idempotency(session, Provider.CREEM, order_data, order_id)
            await session.commit()

        await grant_order_credits(self.services, result.order)

    # ── Subscription payments ─────────────────────────────────────────────────

    async def handle_subscription_paid(self, subscription: dict) -> None:
        metadata = subscription.get("metadata") or {}
        subscription_id = subscription.get("id")
        customer_id = id_of(subscription.get("customer"))
        product = subscription.get("product") or {}
        product_id = id_of(product)
        transaction = subscription.get("last_transaction") or {}
        order_id = id_of(transaction.get("order"))

        user_id = metadata.get("userId")
        if not user_id:
            raise WebhookProcessingError(f"User ID is required for Creem subscription payment {subscription_id}")
        if not order_id:
            raise WebhookProcessingError(f"Creem subscription {subscription_id} paid without a transaction order")

        plan_id = metadata.get("planId")
        if not plan_id and product_id:
            async with self.services.session_factory() as session:
                plan_id = await BillingRepository(session).plan_id_for_creem_product(product_id)
        if not plan_id:
            raise WebhookProcessingError(f"Unable to determine plan for Creem subscription {subscription_id}")

        tx_status = transaction.get("status")
        order_data = {
            "user_id": user_id,
            "payment_reference": order_id,
            "subscription_id": subscription_id,
            "status": OrderStatus.SUCCEEDED.value if tx_status == "paid" else (tx_status or OrderStatus.PENDING.value),
            "order_type": _order_type(product.get("billing_type") if isinstance(product, dict) else None),
            "plan_id": plan_id,
            "price_id": product_id,
            "product_id": product_id,
            "amount_subtotal": to_currency_amount(transaction.get("amount")),
            "amount_discount": to_currency_amount(transaction.get("discount_amount")),
            "amount_tax": to_currency_amount(transaction.get("tax_amount")),
            "amount_total": to_currency_amount(transaction.get("amount_paid")),
            "currency": transaction.get("currency") or self.services.default_currency,
            "metadata_json": {
                "creemOrderId": order_id,
                "creemSubscriptionId": subscription_id,
                "creemCustomerId": customer_id,
                "productId": product_id,
                **metadata,
            },
        }

        async with self.services.session_factory() as session:
            result = await create_order_with_idempotency(session, Provider.CREEM, order_data, order_id)
            await session.commit()

        await grant_order_credits(
            self.services, result.order, subscription=True,
            period_start_ms=epoch_ms(transaction.get("period_start")),
        )

        try:
            await self.services.synchronizer.sync(self.client, subscription_id, customer_id, metadata)
        except Exception:
            logger.exception("[Creem] Failed to sync subscription %s after payment", subscription_id)

    # ── Subscription lifecycle ────────────────────────────────────────────────

    async def handle_subscription_updated(self, subscription: dict, is_ended: bool = False) -> None:
        subscription_id = subscription.get("id")
        metadata = subscription.get("metadata") or {}
        if not subscription_id:
            logger.error("[Creem] Subscription event without an id")
            return

        await self.services.synchronizer.sync(
            self.client, subscription_id, id_of(subscription.get("customer")), metadata,
        )

        if is_ended:
            user_id = metadata.get("userId")
            if not user_id:
                async with self.services.session_factory() as session:
                    user_id = await BillingRepository(session).subscription_user_id(subscription_id)
            await self.services.credits.revoke_remaining_subscription_credits_on_end(
                Provider.CREEM, subscription_id, user_id, metadata,
            )

    # ── Refunds ───────────────────────────────────────────────────────────────

    async def handle_refund_created(self, refund: dict) -> None:
        refund_id = refund.get("id")
        order_id = id_of(refund.get("order"))
        if not refund_id or not order_id:
            logger.error("[Creem] Refund event missing refund or order id: %s", refund_id)
            return

        refund_minor = abs(int(refund.get("refund_amount") or 0))

        async with self.services.session_factory() as session:
            if await refund_order_exists(session, Provider.CREEM, refund_id):
                return

            original = await find_original_order_for_refund(session, Provider.CREEM, order_id)
            if original is None:
                logger.error("[Creem] Refund %s received for unknown order %s — acknowledged", refund_id, order_id)
                return

            transaction = refund.get("transaction") or {}
            paid_minor = transaction.get("amount_paid")
            paid_minor = int(paid_minor) if paid_minor is not None else to_cents(original.amount_total)

            await update_order_status_after_refund(session, original.id, refund_minor, paid_minor)
            checkout = refund.get("checkout") or {}
            result = await create_order_with_idempotency(session, Provider.CREEM, {
                "user_id": original.user_id,
                "payment_reference": order_id,
                "status": refund.get("status") or OrderStatus.SUCCEEDED.value,
                "order_type": OrderType.REFUND.value,
                "plan_id": original.plan_id,
                "product_id": original.product_id,
                "amount_total": to_currency_amount(-refund_minor),
                "currency": original.currency,
                "metadata_json": {
                    "creemRefundId": refund_id,
                    "creemOrderId": order_id,
                    "originalOrderId": original.id,
                    **((checkout.get("metadata") if isinstance(checkout, dict) else None) or {}),
                },
            }, refund_id)
            await session.commit()

        if result.existed:
            return

        if original.subscription_id:
            await self.services.credits.revoke_subscription_credits(original, refund_minor=refund_minor)
        else:
            await self.services.credits.revoke_one_time_credits(refund_minor, original, result.order.id)
