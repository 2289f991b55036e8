"""
Stripe webhook event handlers
---
Turns verified Stripe events into ledger orders, credit mutations and
subscription syncs. Every handler is safe under at-least-once delivery.

Handles:
- checkout.session.completed → one-time purchase order + one-time credits
- invoice.paid → subscription order + subscription credits, then sync
- customer.subscription.created/updated/deleted → sync (+ plan change, + end-of-term revoke)
- invoice.payment_failed → sync + user notice
- charge.refunded → refund order + credit revocation
- radar.early_fraud_warning.created → auto-refund / cancel / alert per config
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from payledger.db.repository import BillingRepository
from payledger.payments.constants import OrderStatus, OrderType, Provider
from payledger.payments.currency import to_cents, to_currency_amount
from payledger.payments.ledger import (
    booked_refund_minor,
    create_order_with_idempotency,
    find_original_order_for_refund,
    get_order,
    refund_order_exists,
    update_order_status_after_refund,
)
from payledger.providers.base import ProviderAPIError, id_of
from payledger.providers.stripe import StripeClient, parse_subscription
from payledger.webhooks.common import (
    BillingServices,
    WebhookProcessingError,
    grant_order_credits,
)
from payledger.webhooks.subscription_change import detect_subscription_change

logger = logging.getLogger(__name__)


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    # Pre-2025 API versions put it at the top level
    return id_of(details.get("subscription")) or id_of(invoice.get("subscription"))


def _sum_amounts(entries: Optional[list[dict]]) -> int:
    return sum(int(e.get("amount") or 0) for e in (entries or []))


def _first_price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return id_of(items[0].get("price"))


class StripeWebhookHandler:
    def __init__(self, services: BillingServices, client: StripeClient):
        self.services = services
        self.client = client

    async def process(self, event: dict) -> None:
        event_type = event.get("type", "")
        data = (event.get("data") or {}).get("object") or {}
        previous = (event.get("data") or {}).get("previous_attributes") or {}

        logger.info("Stripe webhook: %s (%s)", event_type, event.get("id"))

        if event_type == "checkout.session.completed":
            await self.handle_checkout_session_completed(data)

        elif event_type == "invoice.paid":
            await self.handle_invoice_paid(data)

        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            await self.handle_subscription_update(data, previous_attributes=previous)

        elif event_type == "customer.subscription.deleted":
            await self.handle_subscription_update(data, is_deleted=True)

        elif event_type == "invoice.payment_failed":
            await self.handle_invoice_payment_failed(data)

        elif event_type == "charge.refunded":
            await self.handle_refund(data)

        elif event_type == "radar.early_fraud_warning.created":
            await self.handle_early_fraud_warning(data)

        else:
            logger.debug("Unhandled Stripe event: %s", event_type)

    # ── One-time purchases ────────────────────────────────────────────────────

    async def handle_checkout_session_completed(self, checkout: dict) -> None:
        metadata = checkout.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_id = metadata.get("planId")
        price_id = metadata.get("priceId")

        if checkout.get("mode") != "payment":
            # Subscription checkouts are booked from invoice.paid
            return

        if not user_id or not plan_id or not price_id:
            logger.error(
                "Critical metadata (userId, planId, priceId) missing in checkout session %s: %s",
                checkout.get("id"), metadata,
            )
            return

        payment_intent = id_of(checkout.get("payment_intent"))
        if not payment_intent:
            logger.warning("Payment intent missing on checkout session %s — keying on session id", checkout.get("id"))
            payment_intent = checkout["id"]

        totals = checkout.get("total_details") or {}
        order_data = {
            "user_id": user_id,
            "payment_reference": payment_intent,
            "status": OrderStatus.SUCCEEDED.value,
            "order_type": OrderType.ONE_TIME_PURCHASE.value,
            "plan_id": plan_id,
            "price_id": price_id,
            "amount_subtotal": to_currency_amount(checkout.get("amount_subtotal")),
            "amount_discount": to_currency_amount(totals.get("amount_discount")),
            "amount_tax": to_currency_amount(totals.get("amount_tax")),
            "amount_total": to_currency_amount(checkout.get("amount_total")),
            "currency": checkout.get("currency") or self.services.default_currency,
            "metadata_json": {"stripeCheckoutSessionId": checkout.get("id"), **metadata},
        }

        async with self.services.session_factory() as session:
            result = await create_order_with_idempotency(session, Provider.STRIPE, order_data, payment_intent)
            await session.commit()

        await grant_order_credits(self.services, result.order)

    # ── Subscription payments ─────────────────────────────────────────────────

    async def handle_invoice_paid(self, invoice: dict) -> None:
        subscription_id = _invoice_subscription_id(invoice)
        customer_id = id_of(invoice.get("customer"))
        invoice_id = invoice.get("id")
        billing_reason = invoice.get("billing_reason") or ""

        if (
            invoice.get("status") != "paid"
            or not subscription_id
            or not customer_id
            or not invoice_id
            or not billing_reason.startswith("subscription")
        ):
            logger.warning(
                "Invoice %s is not a paid subscription invoice (status=%s, subscription=%s, customer=%s, reason=%s). Skipping.",
                invoice_id, invoice.get("status"), subscription_id, customer_id, billing_reason,
            )
            return

        async with self.services.session_factory() as session:
            booked = await get_order(session, Provider.STRIPE, invoice_id)

        if booked is None:
            await self._book_subscription_invoice(invoice, subscription_id, customer_id, billing_reason)
        else:
            # A grant that failed on an earlier delivery is retried here
            await grant_order_credits(
                self.services, booked, subscription=True,
                period_start_ms=(booked.metadata_json or {}).get("periodStartMs"),
            )

        try:
            await self.services.synchronizer.sync(self.client, subscription_id, customer_id)
        except Exception:
            logger.exception("Error during post-invoice sync for subscription %s", subscription_id)

    async def _book_subscription_invoice(
        self, invoice: dict, subscription_id: str, customer_id: str, billing_reason: str,
    ) -> None:
        invoice_id = invoice["id"]
        subscription = parse_subscription(await self.client.retrieve_subscription_raw(subscription_id))
        user_id = subscription.metadata.get("userId")

        async with self.services.session_factory() as session:
            repo = BillingRepository(session)
            plan_id = None
            if subscription.price_id:
                plan_id = await repo.plan_id_for_stripe_price(subscription.price_id)
            plan_id = plan_id or subscription.metadata.get("planId")

            if not user_id:
                user_id = await self.client.find_user_id(repo, customer_id)

        if not user_id:
            logger.error("FATAL: User ID could not be determined for invoice %s", invoice_id)
            raise WebhookProcessingError(f"User ID determination failed for invoice {invoice_id}.")
        if not plan_id:
            logger.warning(
                "Could not determine planId for subscription %s from invoice %s — order recorded without credits",
                subscription_id, invoice_id,
            )

        try:
            payment_intent = await self.client.invoice_payment_intent(invoice_id)
        except ProviderAPIError as e:
            logger.warning("Could not resolve payment intent for invoice %s: %s", invoice_id, e)
            payment_intent = None

        period_start_ms = (
            int(subscription.current_period_start.timestamp() * 1000)
            if subscription.current_period_start else None
        )
        order_type = (
            OrderType.SUBSCRIPTION_INITIAL if billing_reason == "subscription_create"
            else OrderType.SUBSCRIPTION_RENEWAL
        )
        order_data = {
            "user_id": user_id,
            "payment_reference": payment_intent,
            "subscription_id": subscription_id,
            "status": OrderStatus.SUCCEEDED.value,
            "order_type": order_type.value,
            "plan_id": plan_id,
            "price_id": subscription.price_id,
            "product_id": subscription.product_id,
            "amount_subtotal": to_currency_amount(invoice.get("subtotal")),
            "amount_discount": to_currency_amount(_sum_amounts(invoice.get("total_discount_amounts"))),
            "amount_tax": to_currency_amount(_sum_amounts(invoice.get("total_taxes"))),
            "amount_total": to_currency_amount(invoice.get("amount_paid")),
            "currency": invoice.get("currency") or self.services.default_currency,
            "metadata_json": {
                "stripeInvoiceId": invoice_id,
                "stripeSubscriptionId": subscription_id,
                "stripeCustomerId": customer_id,
                "billingReason": billing_reason,
                "periodStartMs": period_start_ms,
                **(invoice.get("metadata") or {}),
            },
        }

        async with self.services.session_factory() as session:
            result = await create_order_with_idempotency(session, Provider.STRIPE, order_data, invoice_id)
            await session.commit()

        await grant_order_credits(self.services, result.order, subscription=True, period_start_ms=period_start_ms)

    # ── Subscription lifecycle ────────────────────────────────────────────────

    async def handle_subscription_update(
        self,
        subscription: dict,
        is_deleted: bool = False,
        previous_attributes: Optional[dict] = None,
    ) -> None:
        subscription_id = subscription.get("id")
        customer_id = id_of(subscription.get("customer"))
        metadata = subscription.get("metadata") or {}

        if not customer_id:
            logger.error("Customer ID missing on subscription %s. Cannot sync.", subscription_id)
            return

        async with self.services.session_factory() as session:
            stored = await BillingRepository(session).get_subscription(subscription_id)
            stored_price_id = stored.price_id if stored else None
            stored_user_id = stored.user_id if stored else None

        previous_price_id = _first_price_id(previous_attributes or {}) or stored_price_id
        current_price_id = _first_price_id(subscription)

        await self.services.synchronizer.sync(self.client, subscription_id, customer_id, metadata)

        if not is_deleted and previous_price_id and current_price_id and previous_price_id != current_price_id:
            async with self.services.session_factory() as session:
                change = await detect_subscription_change(
                    BillingRepository(session), current_price_id, previous_price_id,
                )
            await self.services.change_handler.handle(
                parse_subscription(subscription), metadata.get("userId") or stored_user_id, change,
            )

        if is_deleted:
            user_id = metadata.get("userId")
            if not user_id:
                async with self.services.session_factory() as session:
                    repo = BillingRepository(session)
                    user_id = (
                        await repo.user_id_for_stripe_customer(customer_id)
                        or await repo.subscription_user_id(subscription_id)
                    )
            await self.services.credits.revoke_remaining_subscription_credits_on_end(
                Provider.STRIPE, subscription_id, user_id, metadata,
            )

    async def handle_invoice_payment_failed(self, invoice: dict) -> None:
        subscription_id = _invoice_subscription_id(invoice)
        customer_id = id_of(invoice.get("customer"))
        invoice_id = invoice.get("id")

        if not subscription_id or not customer_id or not invoice_id:
            logger.warning(
                "Skipping invoice.payment_failed for invoice %s: subscription=%s customer=%s",
                invoice_id, subscription_id, customer_id,
            )
            return

        await self.services.synchronizer.sync(self.client, subscription_id, customer_id)

        try:
            await self.services.notifier.invoice_payment_failed(
                invoice.get("customer_email"),
                invoice_id,
                to_currency_amount(invoice.get("amount_due")),
                invoice.get("currency"),
                invoice.get("hosted_invoice_url"),
            )
        except Exception:
            logger.exception("Error sending payment failed email for invoice %s", invoice_id)

    # ── Refunds ───────────────────────────────────────────────────────────────

    async def handle_refund(self, charge: dict) -> None:
        charge_id = charge.get("id")
        payment_intent = id_of(charge.get("payment_intent"))
        refunded_total = int(charge.get("amount_refunded") or 0)

        if not charge_id or not payment_intent:
            logger.error("Refunded charge %s has no payment intent. Cannot process refund.", charge_id)
            return
        if refunded_total <= 0:
            return

        refunds = (charge.get("refunds") or {}).get("data") or []
        latest_refund = refunds[0] if refunds else {}
        # Webhook charges carry no refund list on newer API versions; the
        # cumulative amount still differs for every refund on the charge
        refund_id = latest_refund.get("id") or f"{charge_id}:{refunded_total}"

        async with self.services.session_factory() as session:
            if await refund_order_exists(session, Provider.STRIPE, refund_id):
                return

            if latest_refund.get("amount"):
                refund_amount = int(latest_refund["amount"])
            else:
                booked = await booked_refund_minor(session, Provider.STRIPE, payment_intent)
                refund_amount = max(refunded_total - booked, 0)

            original = await find_original_order_for_refund(session, Provider.STRIPE, payment_intent)
            if original is None:
                logger.error("Original order for payment intent %s not found — refund %s acknowledged", payment_intent, refund_id)
                return

            await update_order_status_after_refund(
                session, original.id, refunded_total, to_cents(original.amount_total),
            )
            result = await create_order_with_idempotency(session, Provider.STRIPE, {
                "user_id": original.user_id,
                "payment_reference": payment_intent,
                "status": OrderStatus.SUCCEEDED.value,
                "order_type": OrderType.REFUND.value,
                "plan_id": original.plan_id,
                "amount_total": to_currency_amount(-refund_amount),
                "currency": charge.get("currency") or original.currency,
                "metadata_json": {
                    "stripeChargeId": charge_id,
                    "stripePaymentIntentId": payment_intent,
                    "originalOrderId": original.id,
                    "refundReason": latest_refund.get("reason"),
                    **(charge.get("metadata") or {}),
                },
            }, refund_id)
            await session.commit()

        if result.existed:
            return

        if original.subscription_id:
            await self.services.credits.revoke_subscription_credits(original, refund_minor=refunded_total)
        else:
            await self.services.credits.revoke_one_time_credits(refunded_total, original, result.order.id)

    # ── Fraud ─────────────────────────────────────────────────────────────────

    async def handle_early_fraud_warning(self, warning: dict) -> None:
        charge_id = id_of(warning.get("charge"))
        if not charge_id:
            logger.error("Charge ID missing from early fraud warning %s", warning.get("id"))
            return

        actions = self.services.fraud_actions
        should_refund = "refund" in actions
        should_email = "email" in actions
        if not should_refund and not should_email:
            logger.warning(
                "Fraud warning %s for charge %s detected, but no automatic actions configured. "
                "Set STRIPE_RADAR_EARLY_FRAUD_WARNING_TYPE to enable automatic responses.",
                warning.get("id"), charge_id,
            )
            return

        charge: dict[str, Any] = await self.client.retrieve_charge(charge_id)
        already_refunded = bool(charge.get("refunded"))
        is_subscription_charge = "Subscription" in (charge.get("description") or "")
        customer_id = id_of(charge.get("customer"))

        subscription_cancelled = False
        if should_refund:
            if already_refunded:
                logger.info("Charge %s already refunded", charge_id)
            else:
                await self.client.create_refund(charge_id, reason="fraudulent")
                logger.info("Refunded charge %s after early fraud warning", charge_id)
                if is_subscription_charge and customer_id:
                    latest = await self.client.list_subscriptions(customer_id, limit=1)
                    if latest and latest[0].get("id"):
                        await self.client.cancel_subscription(latest[0]["id"])
                        subscription_cancelled = True
                        logger.info("Cancelled subscription %s due to fraudulent charge", latest[0]["id"])

        if not should_email:
            return

        actions_taken: list[str] = []
        if should_refund:
            actions_taken.append("Automatic refund initiated")
            if subscription_cancelled:
                actions_taken.append("Associated subscription cancelled")
        actions_taken.append("Fraud warning email sent to administrators")

        amount = to_currency_amount(charge.get("amount"))
        try:
            await self.services.notifier.fraud_warning_admin(
                warning.get("id"), charge_id, customer_id, amount,
                charge.get("currency"), charge.get("description"), actions_taken,
            )
        except Exception:
            logger.exception("Failed to send fraud warning admin email for charge %s", charge_id)

        if should_refund and not already_refunded:
            billing = charge.get("billing_details") or {}
            try:
                await self.services.notifier.fraud_refund_user(
                    billing.get("email") or charge.get("receipt_email"),
                    charge_id, amount, charge.get("currency"), subscription_cancelled,
                )
            except Exception:
                logger.exception("Failed to send fraud refund user email for charge %s", charge_id)
