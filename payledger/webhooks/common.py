"""Pieces shared by the Stripe and Creem webhook handlers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payledger.db.billing_tables import OrderRow
from payledger.payments.constants import OrderStatus
from payledger.payments.credits import CreditManager
from payledger.services.notifications import Notifier
from payledger.services.sync import SubscriptionSynchronizer
from payledger.webhooks.subscription_change import SubscriptionChangeHandler

logger = logging.getLogger(__name__)

_REFUNDED_STATUSES = (OrderStatus.REFUNDED.value, OrderStatus.PARTIALLY_REFUNDED.value)


class WebhookProcessingError(Exception):
    """Event could not be applied; the endpoint answers 500 so the provider retries."""


@dataclass
class BillingServices:
    """Everything a webhook handler needs besides its provider client."""

    session_factory: Callable[[], AsyncSession]
    credits: CreditManager
    synchronizer: SubscriptionSynchronizer
    notifier: Notifier
    change_handler: SubscriptionChangeHandler = field(default_factory=SubscriptionChangeHandler)
    default_currency: str = "usd"
    # Radar early-fraud-warning responses: {"refund", "email"}
    fraud_actions: frozenset[str] = frozenset()


def parse_fraud_actions(raw: str) -> frozenset[str]:
    return frozenset(a.strip().lower() for a in (raw or "").split(",") if a.strip())


def epoch_ms(value: Any) -> Optional[int]:
    """Epoch seconds or milliseconds → milliseconds."""
    if value in (None, ""):
        return None
    number = int(value)
    return number if number >= 10**12 else number * 1000


async def alert_credit_failure(
    services: BillingServices,
    user_id: str,
    order_id: str,
    plan_id: Optional[str],
    error: BaseException,
) -> None:
    try:
        await services.notifier.credit_upgrade_failed(user_id, order_id, plan_id, error)
    except Exception:
        logger.exception("Failed to send credit-upgrade alert for order %s", order_id)


async def grant_order_credits(
    services: BillingServices,
    order: OrderRow,
    subscription: bool = False,
    period_start_ms: Optional[int] = None,
) -> None:
    """Grant what ``order`` paid for. Runs on redeliveries too; the credit
    manager skips orders it has already granted."""
    if not order.plan_id or order.status in _REFUNDED_STATUSES:
        return
    try:
        if subscription:
            await services.credits.upgrade_subscription_credits(
                order.user_id, order.plan_id, order.id, period_start_ms,
            )
        else:
            await services.credits.upgrade_one_time_credits(order.user_id, order.plan_id, order.id)
    except Exception as e:
        logger.exception("CRITICAL: Failed to grant credits for user %s, order %s", order.user_id, order.id)
        await alert_credit_failure(services, order.user_id, order.id, order.plan_id, e)
        raise
