"""Creem REST client — JSON API authenticated with the ``x-api-key`` header."""
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


def _date(value: Any) -> Optional[datetime]:
    """Creem ISO-8601 string → aware datetime; unparseable → None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_subscription(data: dict) -> ProviderSubscription:
    status = data.get("status") or "active"
    items = data.get("items") or []
    period_end = _date(data.get("current_period_end_date"))
    return ProviderSubscription(
        provider=Provider.CREEM,
        id=data["id"],
        customer_id=id_of(data.get("customer")),
        status=status,
        price_id=(items[0].get("price_id") if items else None) or None,
        product_id=id_of(data.get("product")),
        current_period_start=_date(data.get("current_period_start_date")),
        current_period_end=period_end,
        cancel_at_period_end=status == "scheduled_cancel",
        canceled_at=_date(data.get("canceled_at")),
        ended_at=period_end if status == "canceled" else None,
        metadata=dict(data.get("metadata") or {}),
    )


def parse_checkout(data: dict) -> ProviderCheckout:
    order = data.get("order") or {}
    subscription_id = id_of(data.get("subscription"))
    return ProviderCheckout(
        provider=Provider.CREEM,
        id=data["id"],
        status=data.get("status"),
        is_complete=data.get("status") == "completed",
        mode="subscription" if subscription_id else "payment",
        is_paid=(order.get("status") == "paid") if order else data.get("status") == "completed",
        subscription_id=subscription_id,
        order_reference=id_of(order) if order else None,
        metadata=dict(data.get("metadata") or {}),
    )


class CreemClient(PaymentProviderAdapter):
    provider = Provider.CREEM
    checkout_query_param = "checkout_id"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.creem.io/v1",
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, timeout, transport)

    def _auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or f"Creem API responded with status {resp.status_code}"
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return err["message"]
            message = body.get("message")
            if isinstance(message, list):
                return ", ".join(str(m) for m in message)
            if message:
                return str(message)
        return f"Creem API responded with status {resp.status_code}"

    # ── Adapter interface ─────────────────────────────────────────────────────

    async def fetch_subscription(self, subscription_id: str) -> ProviderSubscription:
        data = await self.retrieve_subscription_raw(subscription_id)
        return parse_subscription(data)

    async def fetch_checkout(self, checkout_id: str) -> ProviderCheckout:
        data = await self._request(
            "GET", "/checkouts", "retrieve Creem checkout", checkout_id,
            params={"checkout_id": checkout_id},
        )
        return parse_checkout(data)

    async def lookup_customer_user_id(self, customer_id: str) -> Optional[str]:
        customer = await self.retrieve_customer(customer_id=customer_id)
        return ((customer or {}).get("metadata") or {}).get("userId")

    async def find_plan_id(self, repo, subscription: ProviderSubscription) -> Optional[str]:
        if not subscription.product_id:
            return None
        return await repo.plan_id_for_creem_product(subscription.product_id)

    # ── Creem-specific calls ──────────────────────────────────────────────────

    async def retrieve_subscription_raw(self, subscription_id: str) -> dict:
        return await self._request(
            "GET", "/subscriptions", "retrieve Creem subscription", subscription_id,
            params={"subscription_id": subscription_id},
        )

    async def retrieve_customer(self, customer_id: Optional[str] = None, email: Optional[str] = None) -> dict:
        params = {k: v for k, v in (("customer_id", customer_id), ("email", email)) if v}
        return await self._request(
            "GET", "/customers", "retrieve Creem customer", customer_id or email or "unknown",
            params=params,
        )
