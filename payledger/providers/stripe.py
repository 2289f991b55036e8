"""Stripe REST client — raw httpx against api.stripe.com (form-encoded, Bearer key)."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from payledger.payments.constants import Provider
from payledger.providers.base import (
    PaymentProviderAdapter,
    ProviderCheckout,
    ProviderSubscription,
    id_of,
)

logger = logging.getLogger(__name__)


def _ts(value: Any) -> Optional[datetime]:
    """Stripe epoch seconds → aware datetime."""
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_subscription(data: dict) -> ProviderSubscription:
    items = (data.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    price = first.get("price") or {}
    # Newer API versions moved billing periods onto the subscription item
    period_start = first.get("current_period_start") or data.get("current_period_start")
    period_end = first.get("current_period_end") or data.get("current_period_end")
    return ProviderSubscription(
        provider=Provider.STRIPE,
        id=data["id"],
        customer_id=id_of(data.get("customer")),
        status=data.get("status") or "incomplete",
        price_id=price.get("id"),
        product_id=id_of(price.get("product")),
        current_period_start=_ts(period_start),
        current_period_end=_ts(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        canceled_at=_ts(data.get("canceled_at")),
        ended_at=_ts(data.get("ended_at")),
        trial_start=_ts(data.get("trial_start")),
        trial_end=_ts(data.get("trial_end")),
        metadata=dict(data.get("metadata") or {}),
    )


def parse_checkout(data: dict) -> ProviderCheckout:
    mode = data.get("mode") or "payment"
    payment_intent = id_of(data.get("payment_intent"))
    return ProviderCheckout(
        provider=Provider.STRIPE,
        id=data["id"],
        status=data.get("status"),
        is_complete=data.get("status") == "complete",
        mode="subscription" if mode == "subscription" else "payment",
        is_paid=data.get("payment_status") in ("paid", "no_payment_required"),
        subscription_id=id_of(data.get("subscription")),
        order_reference=payment_intent or data["id"],
        metadata=dict(data.get("metadata") or {}),
    )


class StripeClient(PaymentProviderAdapter):
    provider = Provider.STRIPE
    checkout_query_param = "session_id"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com/v1",
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, timeout, transport)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or f"Stripe API responded with status {resp.status_code}"
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict) and err.get("message"):
            return err["message"]
        return f"Stripe API responded with status {resp.status_code}"

    # ── Adapter interface ─────────────────────────────────────────────────────

    async def fetch_subscription(self, subscription_id: str) -> ProviderSubscription:
        return parse_subscription(await self.retrieve_subscription_raw(subscription_id))

    async def fetch_checkout(self, checkout_id: str) -> ProviderCheckout:
        data = await self._request(
            "GET", f"/checkout/sessions/{checkout_id}", "retrieve Stripe checkout session", checkout_id,
        )
        return parse_checkout(data)

    async def lookup_customer_user_id(self, customer_id: str) -> Optional[str]:
        customer = await self.retrieve_customer(customer_id)
        if not customer or customer.get("deleted"):
            return None
        return (customer.get("metadata") or {}).get("userId")

    async def find_plan_id(self, repo, subscription: ProviderSubscription) -> Optional[str]:
        if not subscription.price_id:
            return None
        return await repo.plan_id_for_stripe_price(subscription.price_id)

    async def find_user_id(self, repo, customer_id: Optional[str]) -> Optional[str]:
        """Customer metadata first, then the user row holding this Stripe customer id."""
        user_id = await super().find_user_id(repo, customer_id)
        if not user_id and customer_id:
            user_id = await repo.user_id_for_stripe_customer(customer_id)
        return user_id

    # ── Stripe-specific calls ─────────────────────────────────────────────────

    async def retrieve_subscription_raw(self, subscription_id: str) -> dict:
        return await self._request(
            "GET", f"/subscriptions/{subscription_id}", "retrieve Stripe subscription", subscription_id,
        )

    async def retrieve_customer(self, customer_id: str) -> dict:
        return await self._request(
            "GET", f"/customers/{customer_id}", "retrieve Stripe customer", customer_id,
        )

    async def retrieve_invoice(self, invoice_id: str, expand: Optional[list[str]] = None) -> dict:
        params = [("expand[]", e) for e in (expand or [])]
        return await self._request(
            "GET", f"/invoices/{invoice_id}", "retrieve Stripe invoice", invoice_id, params=params,
        )

    async def invoice_payment_intent(self, invoice_id: str) -> Optional[str]:
        """Payment intent behind an invoice (first entry of the expanded ``payments`` list)."""
        invoice = await self.retrieve_invoice(invoice_id, expand=["payments"])
        payments = ((invoice or {}).get("payments") or {}).get("data") or []
        if payments:
            payment = payments[0].get("payment") or {}
            return id_of(payment.get("payment_intent"))
        # Older API versions expose it directly on the invoice
        return id_of((invoice or {}).get("payment_intent"))

    async def retrieve_charge(self, charge_id: str) -> dict:
        return await self._request(
            "GET", f"/charges/{charge_id}", "retrieve Stripe charge", charge_id,
        )

    async def create_refund(self, charge_id: str, reason: str = "fraudulent") -> dict:
        return await self._request(
            "POST", "/refunds", "refund Stripe charge", charge_id,
            data={"charge": charge_id, "reason": reason},
        )

    async def list_subscriptions(self, customer_id: str, limit: int = 1) -> list[dict]:
        data = await self._request(
            "GET", "/subscriptions", "list Stripe subscriptions", customer_id,
            params={"customer": customer_id, "limit": limit},
        )
        return (data or {}).get("data") or []

    async def cancel_subscription(self, subscription_id: str) -> dict:
        return await self._request(
            "DELETE", f"/subscriptions/{subscription_id}", "cancel Stripe subscription", subscription_id,
        )
