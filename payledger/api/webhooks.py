"""
Provider webhook endpoints
---
Signature check and JSON parse happen here; everything else lives in the
per-provider handlers.

Endpoints:
- POST /api/stripe/webhook — Stripe events (``stripe-signature`` header)
- POST /api/creem/webhook — Creem events (``creem-signature`` header)
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from config.settings import settings
from payledger.api.deps import get_billing_services, get_creem_client, get_stripe_client
from payledger.middleware.request_id import bind_webhook_event
from payledger.providers.creem import CreemClient
from payledger.providers.stripe import StripeClient
from payledger.webhooks.common import BillingServices
from payledger.webhooks.creem_handlers import CreemWebhookHandler
from payledger.webhooks.stripe_handlers import StripeWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["webhooks"])

STRIPE_WEBHOOK_SECRET = settings.STRIPE_WEBHOOK_SECRET
CREEM_WEBHOOK_SECRET = settings.CREEM_WEBHOOK_SECRET
STRIPE_SIGNATURE_TOLERANCE = 300


def _parse_json(payload: bytes) -> dict:
    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(400, "Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(400, "Invalid JSON payload")
    return event


# ── Stripe ────────────────────────────────────────────────────────────────────

def _verify_stripe_signature(payload: bytes, sig_header: Optional[str], secret: str) -> dict:
    """Verify Stripe webhook signature and return parsed event.

    Follows Stripe's v1 signature verification:
    1. Extract timestamp and signatures from header
    2. Compute expected signature using HMAC-SHA256
    3. Compare (timing-safe) and check timestamp tolerance
    """
    if not secret:
        raise HTTPException(500, "Stripe webhook secret not configured")
    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        elements = dict(item.strip().split("=", 1) for item in sig_header.split(","))
        timestamp = elements.get("t", "")
        signature = elements.get("v1", "")
    except (ValueError, AttributeError):
        raise HTTPException(400, "Invalid Stripe signature header")

    if not timestamp or not signature:
        raise HTTPException(400, "Missing timestamp or signature")

    try:
        ts = int(timestamp)
    except ValueError:
        raise HTTPException(400, "Invalid Stripe signature header")
    if abs(time.time() - ts) > STRIPE_SIGNATURE_TOLERANCE:
        raise HTTPException(400, "Webhook timestamp too old")

    signed_payload = f"{timestamp}.{payload.decode('utf-8', errors='replace')}"
    expected = hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(expected, signature):
        raise HTTPException(400, "Invalid signature")

    return _parse_json(payload)


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    services: BillingServices = Depends(get_billing_services),
    client: StripeClient = Depends(get_stripe_client),
):
    """Handle Stripe webhook events.

    Handles:
    - checkout.session.completed → one-time purchase
    - invoice.paid → subscription payment
    - customer.subscription.created/updated/deleted → lifecycle sync
    - invoice.payment_failed → sync + customer email
    - charge.refunded → refund + credit revocation
    - radar.early_fraud_warning.created → configured fraud response
    """
    body = await request.body()
    event = _verify_stripe_signature(body, stripe_signature, STRIPE_WEBHOOK_SECRET)

    with bind_webhook_event("stripe", event.get("type"), event.get("id")):
        try:
            await StripeWebhookHandler(services, client).process(event)
        except Exception:
            logger.exception("Error processing Stripe webhook %s (%s)", event.get("type"), event.get("id"))
            raise HTTPException(500, "Stripe webhook handler failed")

    return {"received": True}


# ── Creem ─────────────────────────────────────────────────────────────────────

def _verify_creem_signature(payload: bytes, signature: Optional[str], secret: str) -> dict:
    """Creem signs the raw body: hex HMAC-SHA256 keyed with the webhook secret."""
    if not secret:
        raise HTTPException(500, "Creem webhook secret not configured")
    if not signature:
        raise HTTPException(400, "Missing creem-signature header")

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise HTTPException(400, "Invalid signature")

    return _parse_json(payload)


@router.post("/creem/webhook")
async def creem_webhook(
    request: Request,
    creem_signature: Optional[str] = Header(None, alias="creem-signature"),
    services: BillingServices = Depends(get_billing_services),
    client: CreemClient = Depends(get_creem_client),
):
    """Handle Creem webhook events (checkout, subscription lifecycle, refunds)."""
    body = await request.body()
    payload = _verify_creem_signature(body, creem_signature, CREEM_WEBHOOK_SECRET)

    with bind_webhook_event("creem", payload.get("eventType"), payload.get("id")):
        try:
            await CreemWebhookHandler(services, client).process(payload)
        except Exception:
            logger.exception("Error processing Creem webhook %s (%s)", payload.get("eventType"), payload.get("id"))
            raise HTTPException(500, "Creem webhook handler failed")

    return {"received": True}
