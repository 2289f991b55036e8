"""
Checkout verification for the payment success page
---
Endpoints:
- GET /api/payment/verify-success — confirm a finished Stripe or Creem checkout
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from payledger.api.deps import get_creem_client, get_payment_verifier, get_stripe_client
from payledger.auth import require_user
from payledger.db.tables import UserRow
from payledger.payments.constants import Provider
from payledger.providers.base import PaymentProviderAdapter, ProviderNotFoundError
from payledger.providers.creem import CreemClient
from payledger.providers.stripe import StripeClient
from payledger.services.verify import PaymentVerifier, VerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["payment"])


@router.get("/verify-success")
async def verify_success(
    provider: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    checkout_id: Optional[str] = Query(None),
    user: UserRow = Depends(require_user),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    stripe_client: StripeClient = Depends(get_stripe_client),
    creem_client: CreemClient = Depends(get_creem_client),
):
    """Report whether the checkout's order or subscription has reached the ledger."""
    if not provider:
        raise HTTPException(400, "Missing provider parameter.")

    adapters: dict[str, PaymentProviderAdapter] = {
        Provider.STRIPE.value: stripe_client,
        Provider.CREEM.value: creem_client,
    }
    adapter = adapters.get(provider.lower())
    if adapter is None:
        raise HTTPException(400, f"Unsupported provider: {provider}")

    checkout_ref = session_id if adapter.checkout_query_param == "session_id" else checkout_id
    if not checkout_ref:
        raise HTTPException(400, f"Missing {adapter.checkout_query_param} parameter.")

    try:
        return await verifier.verify(adapter, checkout_ref, user.id)
    except VerificationError as e:
        raise HTTPException(e.status_code, e.message)
    except ProviderNotFoundError:
        raise HTTPException(404, "Invalid session ID.")
    except Exception:
        logger.exception("Error verifying %s checkout %s for user %s", provider, checkout_ref, user.id)
        raise HTTPException(500, "Failed to verify payment.")
