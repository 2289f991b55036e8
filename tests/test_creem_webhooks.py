"""Tests for the Creem webhook endpoint."""
from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from payledger.api.webhooks import _verify_creem_signature
from payledger.db.billing_tables import CreditLogRow, OrderRow, SubscriptionRow, UsageRow
from payledger.payments.credits import CreditManager
from payledger.webhooks.creem_handlers import _order_type
from conftest import TEST_USER_ID, get_test_session

PERIOD_START_MS = 1767225600000  # 2026-01-01T00:00:00Z


def _sign(payload: bytes, secret: str = "creem_whsec_test") -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _creem_event(event_type: str, obj: dict) -> dict:
    return {"id": f"evt_{event_type}", "eventType": event_type, "created_at": 1767225600000, "object": obj}


async def _post(client, event: dict):
    payload = json.dumps(event).encode()
    return await client.post(
        "/api/creem/webhook",
        content=payload,
        headers={"creem-signature": _sign(payload), "content-type": "application/json"},
    )


def _checkout(**overrides) -> dict:
    data = {
        "id": "ch_creem_1",
        "object": "checkout",
        "status": "completed",
        "product": "prod_creem_onetime",
        "order": {
            "id": "ord_1",
            "type": "onetime",
            "status": "paid",
            "sub_total": 500,
            "discount_amount": 0,
            "tax_amount": 0,
            "amount_paid": 500,
            "currency": "USD",
            "customer": "cust_creem_1",
            "product": "prod_creem_onetime",
        },
        "metadata": {"userId": TEST_USER_ID, "planId": "plan-creem-credits"},
    }
    data.update(overrides)
    return data


def _paid_subscription(order_id: str = "ord_sub_1", metadata: dict | None = None) -> dict:
    return {
        "id": "sub_creem_1",
        "object": "subscription",
        "status": "active",
        "product": {"id": "prod_creem_monthly", "billing_type": "recurring"},
        "customer": {"id": "cust_creem_1", "email": "user@example.com"},
        "last_transaction": {
            "id": f"tran_{order_id}",
            "order": order_id,
            "status": "paid",
            "amount": 999,
            "amount_paid": 999,
            "discount_amount": 0,
            "tax_amount": 0,
            "currency": "USD",
            "period_start": PERIOD_START_MS,
        },
        "metadata": metadata if metadata is not None else {"userId": TEST_USER_ID},
    }


def _refund(refund_id: str = "ref_1", order_id: str = "ord_1", amount: int = 500, paid: int = 500) -> dict:
    return {
        "id": refund_id,
        "object": "refund",
        "status": "succeeded",
        "refund_amount": amount,
        "order": {"id": order_id},
        "transaction": {"id": "tran_1", "amount_paid": paid},
        "checkout": {"id": "ch_creem_1", "metadata": {"userId": TEST_USER_ID}},
    }


async def _orders(order_type: str | None = None) -> list[OrderRow]:
    async with get_test_session() as session:
        stmt = select(OrderRow).where(OrderRow.provider == "creem")
        if order_type:
            stmt = stmt.where(OrderRow.order_type == order_type)
        return list((await session.execute(stmt)).scalars().all())


async def _usage() -> UsageRow | None:
    async with get_test_session() as session:
        return (await session.execute(select(UsageRow).where(UsageRow.user_id == TEST_USER_ID))).scalar_one_or_none()


async def _log_types() -> list[tuple[str, int]]:
    async with get_test_session() as session:
        rows = (await session.execute(select(CreditLogRow).order_by(CreditLogRow.created_at))).scalars().all()
        return [(r.type, r.amount) for r in rows]


async def _subscription() -> SubscriptionRow | None:
    async with get_test_session() as session:
        return (await session.execute(
            select(SubscriptionRow).where(SubscriptionRow.subscription_id == "sub_creem_1")
        )).scalar_one_or_none()


class TestCreemSignature:
    def test_valid_signature(self):
        payload = b'{"eventType": "checkout.completed"}'
        assert _verify_creem_signature(payload, _sign(payload, "s"), "s")["eventType"] == "checkout.completed"

    def test_signature_is_case_insensitive_hex(self):
        payload = b"{}"
        assert _verify_creem_signature(payload, _sign(payload, "s").upper(), "s") == {}

    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_bad_signature_rejects(self, signature):
        with pytest.raises(HTTPException) as exc:
            _verify_creem_signature(b"{}", signature, "s")
        assert exc.value.status_code == 400

    def test_missing_secret_is_server_error(self):
        with pytest.raises(HTTPException) as exc:
            _verify_creem_signature(b"{}", "abc", "")
        assert exc.value.status_code == 500

    @pytest.mark.parametrize("payload", [b"not json", b"[1, 2]"])
    def test_signed_non_object_rejects(self, payload):
        with pytest.raises(HTTPException) as exc:
            _verify_creem_signature(payload, _sign(payload, "s"), "s")
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_endpoint_rejects_tampered_body(self, client):
        payload = json.dumps(_creem_event("checkout.completed", _checkout())).encode()
        resp = await client.post(
            "/api/creem/webhook",
            content=payload.replace(b"500", b"5000"),
            headers={"creem-signature": _sign(payload)},
        )
        assert resp.status_code == 400
        assert await _orders() == []


def test_order_type_defaults_to_recurring():
    assert _order_type("recurring") == "recurring"
    assert _order_type("one_time_purchase") == "one_time_purchase"
    assert _order_type(None) == "recurring"
    assert _order_type("something-new") == "recurring"


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_one_time_purchase(self, client):
        resp = await _post(client, _creem_event("checkout.completed", _checkout()))
        assert resp.status_code == 200
        assert resp.json() == {"received": True}

        [order] = await _orders()
        assert order.provider_order_id == "ord_1"
        assert order.payment_reference == "ord_1"
        assert order.order_type == "one_time_purchase"
        assert order.amount_total == "5"
        assert order.currency == "USD"
        assert order.metadata_json["creemCheckoutId"] == "ch_creem_1"
        assert (await _usage()).one_time_credits_balance == 500

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_noop(self, client):
        for _ in range(3):
            assert (await _post(client, _creem_event("checkout.completed", _checkout()))).status_code == 200
        assert len(await _orders()) == 1
        assert await _log_types() == [("one_time_purchase", 500)]

    @pytest.mark.asyncio
    async def test_failed_grant_is_applied_on_redelivery(self, client, mailer):
        with patch.object(
            CreditManager, "upgrade_one_time_credits",
            new_callable=AsyncMock, side_effect=RuntimeError("database is locked"),
        ):
            first = await _post(client, _creem_event("checkout.completed", _checkout()))
        assert first.status_code == 500

        redelivery = await _post(client, _creem_event("checkout.completed", _checkout()))
        assert redelivery.status_code == 200
        assert len(await _orders()) == 1
        assert (await _usage()).one_time_credits_balance == 500

    @pytest.mark.asyncio
    async def test_subscription_checkout_is_left_to_subscription_paid(self, client):
        checkout = _checkout()
        checkout["order"]["type"] = "recurring"
        await _post(client, _creem_event("checkout.completed", checkout))
        assert await _orders() == []

    @pytest.mark.asyncio
    async def test_missing_metadata_is_dropped(self, client):
        resp = await _post(client, _creem_event("checkout.completed", _checkout(metadata={})))
        assert resp.status_code == 200
        assert await _orders() == []


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_paid_grants_and_syncs(self, client, creem_api):
        creem_api.add_subscription()
        resp = await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        assert resp.status_code == 200

        [order] = await _orders()
        assert order.provider_order_id == "ord_sub_1"
        assert order.order_type == "recurring"
        assert order.plan_id == "plan-creem-monthly"
        assert order.subscription_id == "sub_creem_1"
        assert order.amount_total == "9.99"

        assert (await _usage()).subscription_credits_balance == 300
        sub = await _subscription()
        assert sub.provider == "creem"
        assert sub.status == "active"
        assert sub.plan_id == "plan-creem-monthly"
        assert sub.customer_id == "cust_creem_1"

    @pytest.mark.asyncio
    async def test_paid_twice_grants_once(self, client, creem_api):
        creem_api.add_subscription()
        for _ in range(2):
            await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        assert len(await _orders()) == 1
        assert await _log_types() == [("subscription_grant", 300)]

    @pytest.mark.asyncio
    async def test_failed_grant_is_applied_on_redelivery(self, client, creem_api, mailer):
        creem_api.add_subscription()
        with patch.object(
            CreditManager, "upgrade_subscription_credits",
            new_callable=AsyncMock, side_effect=RuntimeError("database is locked"),
        ):
            first = await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        assert first.status_code == 500
        assert mailer.recipients() == ["ops@example.com"]

        redelivery = await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        assert redelivery.status_code == 200
        assert len(await _orders()) == 1
        assert (await _usage()).subscription_credits_balance == 300
        assert await _log_types() == [("subscription_grant", 300)]

    @pytest.mark.asyncio
    async def test_next_period_resets(self, client, creem_api):
        creem_api.add_subscription()
        await _post(client, _creem_event("subscription.paid", _paid_subscription("ord_sub_1")))
        await _post(client, _creem_event("subscription.paid", _paid_subscription("ord_sub_2")))
        assert len(await _orders()) == 2
        assert (await _usage()).subscription_credits_balance == 300
        assert [t for t, _ in await _log_types()] == [
            "subscription_grant", "subscription_period_reset", "subscription_grant",
        ]

    @pytest.mark.asyncio
    async def test_paid_without_user_is_retried(self, client, creem_api):
        creem_api.add_subscription(metadata={})
        resp = await _post(client, _creem_event("subscription.paid", _paid_subscription(metadata={})))
        assert resp.status_code == 500
        assert await _orders() == []

    @pytest.mark.asyncio
    async def test_sync_failure_after_payment_is_tolerated(self, client, creem_api):
        # Subscription unknown to the API: the post-payment sync 404s
        resp = await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        assert resp.status_code == 200
        assert (await _usage()).subscription_credits_balance == 300
        assert await _subscription() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_type,status", [
        ("subscription.active", "active"),
        ("subscription.update", "active"),
        ("subscription.trialing", "trialing"),
        ("subscription.paused", "paused"),
        ("subscription.expired", "expired"),
    ])
    async def test_lifecycle_events_sync(self, client, creem_api, event_type, status):
        sub = creem_api.add_subscription(status=status)
        resp = await _post(client, _creem_event(event_type, sub))
        assert resp.status_code == 200
        assert (await _subscription()).status == status
        assert await _orders() == []

    @pytest.mark.asyncio
    async def test_scheduled_cancel_is_mirrored(self, client, creem_api):
        sub = creem_api.add_subscription(status="scheduled_cancel")
        await _post(client, _creem_event("subscription.update", sub))
        assert (await _subscription()).cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_canceled_revokes_remaining(self, client, creem_api):
        creem_api.add_subscription()
        await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        canceled = creem_api.add_subscription(status="canceled")

        resp = await _post(client, _creem_event("subscription.canceled", canceled))

        assert resp.status_code == 200
        usage = await _usage()
        assert usage.subscription_credits_balance == 0
        assert usage.balance_jsonb == {}
        assert (await _log_types())[-1] == ("subscription_ended_revoke", -300)
        sub = await _subscription()
        assert sub.status == "canceled"
        assert sub.ended_at is not None

    @pytest.mark.asyncio
    async def test_canceled_resolves_user_from_stored_subscription(self, client, creem_api):
        creem_api.add_subscription()
        await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        canceled = creem_api.add_subscription(status="canceled", metadata={})

        await _post(client, _creem_event("subscription.canceled", canceled))

        assert (await _usage()).subscription_credits_balance == 0


class TestRefundCreated:
    @pytest.mark.asyncio
    async def test_full_refund(self, client):
        await _post(client, _creem_event("checkout.completed", _checkout()))
        resp = await _post(client, _creem_event("refund.created", _refund()))
        assert resp.status_code == 200

        [original] = await _orders("one_time_purchase")
        assert original.status == "refunded"
        [refund] = await _orders("refund")
        assert refund.provider_order_id == "ref_1"
        assert refund.amount_total == "-5"
        assert (await _usage()).one_time_credits_balance == 0
        assert (await _log_types())[-1] == ("refund_revoke", -500)

    @pytest.mark.asyncio
    async def test_duplicate_refund(self, client):
        await _post(client, _creem_event("checkout.completed", _checkout()))
        for _ in range(2):
            await _post(client, _creem_event("refund.created", _refund()))
        assert len(await _orders("refund")) == 1
        assert [t for t, _ in await _log_types()] == ["one_time_purchase", "refund_revoke"]

    @pytest.mark.asyncio
    async def test_partial_refund(self, client):
        await _post(client, _creem_event("checkout.completed", _checkout()))
        await _post(client, _creem_event("refund.created", _refund(amount=100)))
        [original] = await _orders("one_time_purchase")
        assert original.status == "partially_refunded"
        assert (await _usage()).one_time_credits_balance == 500

    @pytest.mark.asyncio
    async def test_orphaned_refund(self, client):
        resp = await _post(client, _creem_event("refund.created", _refund(order_id="ord_unknown")))
        assert resp.status_code == 200
        assert await _orders() == []

    @pytest.mark.asyncio
    async def test_subscription_refund(self, client, creem_api):
        creem_api.add_subscription()
        await _post(client, _creem_event("subscription.paid", _paid_subscription()))
        await _post(client, _creem_event("refund.created", _refund(order_id="ord_sub_1", amount=999, paid=999)))

        [original] = await _orders("recurring")
        assert original.status == "refunded"
        assert (await _usage()).subscription_credits_balance == 0
