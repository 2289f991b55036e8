"""Billing notifications — operator alerts and user notices over a transactional email HTTP API.

Senders raise ``NotificationError`` on delivery failure; webhook handlers
catch and log it so a failed email never masks a committed ledger change.
When no email API is configured messages are only logged.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class Notifier:
    def __init__(
        self,
        api_url: str = "",
        api_key: str = "",
        sender: str = "billing@payledger.local",
        admin_email: str = "",
        support_email: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.admin_email = admin_email
        self.support_email = support_email
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    async def send(self, to: Optional[str], subject: str, text: str) -> bool:
        """Deliver one message. Returns False when skipped (no recipient or no API)."""
        if not to:
            logger.warning("Notification %r skipped: no recipient", subject)
            return False
        if not self.enabled:
            logger.info("Email API not configured — would send %r to %s", subject, to)
            return False

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text}
        try:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                resp = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"Failed to send {subject!r} to {to}: {e}") from e
        if resp.status_code >= 400:
            raise NotificationError(
                f"Failed to send {subject!r} to {to}: email API responded with status {resp.status_code}"
            )
        logger.info("Sent %r to %s", subject, to)
        return True

    # ── Operator alerts ───────────────────────────────────────────────────────

    async def credit_upgrade_failed(
        self, user_id: str, order_id: str, plan_id: Optional[str], error: BaseException,
    ) -> bool:
        return await self.send(
            self.admin_email,
            f"[Billing] Credit grant failed for order {order_id}",
            (
                "Credits could not be granted after all retries.\n\n"
                f"User: {user_id}\nOrder: {order_id}\nPlan: {plan_id}\nError: {error}\n\n"
                "The order is recorded; grant the credits manually."
            ),
        )

    async def fraud_warning_admin(
        self,
        warning_id: str,
        charge_id: str,
        customer_id: Optional[str],
        amount: str,
        currency: Optional[str],
        description: Optional[str],
        actions_taken: list[str],
    ) -> bool:
        actions = "\n".join(f"- {a}" for a in actions_taken)
        return await self.send(
            self.admin_email,
            f"[Billing] Early fraud warning on charge {charge_id}",
            (
                f"Warning: {warning_id}\nCharge: {charge_id}\nCustomer: {customer_id}\n"
                f"Amount: {amount} {(currency or '').upper()}\n"
                f"Description: {description or '-'}\n\nActions taken:\n{actions}"
            ),
        )

    # ── User notices ──────────────────────────────────────────────────────────

    async def invoice_payment_failed(
        self,
        to: Optional[str],
        invoice_id: str,
        amount_due: str,
        currency: Optional[str],
        hosted_invoice_url: Optional[str] = None,
    ) -> bool:
        link = f"\n\nUpdate your payment method: {hosted_invoice_url}" if hosted_invoice_url else ""
        return await self.send(
            to,
            "Your subscription payment failed",
            (
                f"We could not collect {amount_due} {(currency or '').upper()} for invoice {invoice_id}. "
                f"Your subscription stays active while we retry.{link}\n\n"
                f"Questions? Contact {self.support_email}."
            ),
        )

    async def fraud_refund_user(
        self,
        to: Optional[str],
        charge_id: str,
        amount: str,
        currency: Optional[str],
        subscription_cancelled: bool = False,
    ) -> bool:
        cancelled = " The related subscription was cancelled." if subscription_cancelled else ""
        return await self.send(
            to,
            "Your payment has been refunded",
            (
                f"Your payment {charge_id} of {amount} {(currency or '').upper()} was flagged by our "
                f"payment processor and has been refunded in full.{cancelled}\n\n"
                f"If this was a legitimate purchase, contact {self.support_email}."
            ),
        )
