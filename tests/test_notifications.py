"""Tests for billing email notifications."""
from __future__ import annotations

import httpx
import pytest

from payledger.services.notifications import NotificationError, Notifier
from payledger.webhooks.common import alert_credit_failure


class TestSend:
    @pytest.mark.asyncio
    async def test_posts_message(self, mailer):
        assert await mailer.notifier.send("a@example.com", "Hi", "Body") is True
        assert mailer.sent == [{"from": "billing@example.com", "to": ["a@example.com"], "subject": "Hi", "text": "Body"}]

    @pytest.mark.asyncio
    async def test_bearer_key_header(self):
        seen = []

        def _handle(request):
            seen.append(request)
            return httpx.Response(200, json={})

        notifier = Notifier(api_url="https://mail.test/send", api_key="k", transport=httpx.MockTransport(_handle))
        await notifier.send("a@example.com", "Hi", "Body")
        assert seen[0].headers["Authorization"] == "Bearer k"

    @pytest.mark.asyncio
    async def test_no_recipient_skips(self, mailer):
        assert await mailer.notifier.send(None, "Hi", "Body") is False
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_unconfigured_only_logs(self, caplog):
        caplog.set_level("INFO")
        assert await Notifier().send("a@example.com", "Hi", "Body") is False
        assert "Email API not configured" in caplog.text

    @pytest.mark.asyncio
    async def test_api_error_raises(self, mailer):
        mailer.fail = True
        with pytest.raises(NotificationError, match="status 503"):
            await mailer.notifier.send("a@example.com", "Hi", "Body")

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def _boom(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = Notifier(api_url="https://mail.test/send", transport=httpx.MockTransport(_boom))
        with pytest.raises(NotificationError, match="Failed to send"):
            await notifier.send("a@example.com", "Hi", "Body")


class TestTemplates:
    @pytest.mark.asyncio
    async def test_credit_failure_goes_to_admin(self, mailer):
        await mailer.notifier.credit_upgrade_failed("user-1", "order-1", "plan-1", RuntimeError("locked"))
        [msg] = mailer.sent
        assert msg["to"] == ["ops@example.com"]
        assert "order-1" in msg["subject"]
        assert "Error: locked" in msg["text"]

    @pytest.mark.asyncio
    async def test_payment_failed_notice(self, mailer):
        await mailer.notifier.invoice_payment_failed(
            "user@example.com", "in_1", "9.99", "usd", "https://pay.stripe.test/in_1",
        )
        [msg] = mailer.sent
        assert "9.99 USD" in msg["text"]
        assert "https://pay.stripe.test/in_1" in msg["text"]
        assert "support@example.com" in msg["text"]

    @pytest.mark.asyncio
    async def test_fraud_admin_lists_actions(self, mailer):
        await mailer.notifier.fraud_warning_admin(
            "issfr_1", "ch_1", "cus_1", "5", "usd", None, ["Refunded charge", "Canceled sub_1"],
        )
        assert "- Refunded charge\n- Canceled sub_1" in mailer.sent[0]["text"]

    @pytest.mark.asyncio
    async def test_fraud_refund_notice(self, mailer):
        await mailer.notifier.fraud_refund_user("user@example.com", "ch_1", "5", "usd")
        assert mailer.recipients() == ["user@example.com"]
        assert mailer.subjects() == ["Your payment has been refunded"]
        assert "subscription" not in mailer.sent[0]["text"]

    @pytest.mark.asyncio
    async def test_fraud_refund_notice_mentions_cancelled_subscription(self, mailer):
        await mailer.notifier.fraud_refund_user("user@example.com", "ch_1", "9.99", "usd", subscription_cancelled=True)
        assert "The related subscription was cancelled." in mailer.sent[0]["text"]


@pytest.mark.asyncio
async def test_credit_alert_failure_is_swallowed(billing_services, mailer, caplog):
    mailer.fail = True
    await alert_credit_failure(billing_services, "user-1", "order-1", "plan-1", RuntimeError("x"))
    assert "Failed to send credit-upgrade alert" in caplog.text
