"""Billing vocabulary shared by both providers.

Order types and recurring intervals differ between providers:

- Stripe orders: subscription_initial / subscription_renewal, intervals month / year
- Creem orders: recurring, intervals every-month / every-year
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class Provider(str, Enum):
    STRIPE = "stripe"
    CREEM = "creem"


class OrderType(str, Enum):
    ONE_TIME_PURCHASE = "one_time_purchase"
    SUBSCRIPTION_INITIAL = "subscription_initial"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    RECURRING = "recurring"
    REFUND = "refund"


class OrderStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    PENDING = "pending"


class CreditLogType(str, Enum):
    ONE_TIME_PURCHASE = "one_time_purchase"
    SUBSCRIPTION_GRANT = "subscription_grant"
    SUBSCRIPTION_PERIOD_RESET = "subscription_period_reset"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    SUBSCRIPTION_DOWNGRADE = "subscription_downgrade"
    REFUND_REVOKE = "refund_revoke"
    SUBSCRIPTION_ENDED_REVOKE = "subscription_ended_revoke"


class CreditBucket(str, Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


SUBSCRIPTION_ORDER_TYPES = frozenset({
    OrderType.SUBSCRIPTION_INITIAL.value,
    OrderType.SUBSCRIPTION_RENEWAL.value,
    OrderType.RECURRING.value,
})

# Orders a refund can point back at
REFUNDABLE_ORDER_TYPES = frozenset({OrderType.ONE_TIME_PURCHASE.value}) | SUBSCRIPTION_ORDER_TYPES

MONTHLY_INTERVALS = frozenset({"month", "every-month"})
YEARLY_INTERVALS = frozenset({"year", "every-year"})

# Subscription statuses that entitle the user to the plan
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


def is_monthly_interval(interval: Optional[str]) -> bool:
    return bool(interval) and interval in MONTHLY_INTERVALS


def is_yearly_interval(interval: Optional[str]) -> bool:
    return bool(interval) and interval in YEARLY_INTERVALS


def normalize_interval(interval: Optional[str]) -> str:
    """Map provider intervals to 'monthly' / 'yearly'; anything else passes through."""
    if not interval:
        return "unknown"
    if is_monthly_interval(interval):
        return "monthly"
    if is_yearly_interval(interval):
        return "yearly"
    return interval
