"""Billing tables — orders, subscriptions, credit balances and the credit audit log."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Boolean, Text,
    CheckConstraint, ForeignKey, Index, UniqueConstraint,
)

from payledger.db.tables import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderRow(Base):
    """One row per external payment event. Never deleted; status changes on refund."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Provider: stripe | creem
    provider = Column(String(20), nullable=False)
    # Idempotency key: payment intent / invoice / refund id (Stripe), order / refund id (Creem)
    provider_order_id = Column(String(255), nullable=False)
    # What a later refund event points at: Stripe payment intent, Creem order id
    payment_reference = Column(String(255), nullable=True, index=True)

    # one_time_purchase | subscription_initial | subscription_renewal | recurring | refund
    order_type = Column(String(40), nullable=False)
    # succeeded | refunded | partially_refunded | pending | ...
    status = Column(String(40), nullable=False, default="succeeded")

    # Decimal strings (minor units / 100)
    amount_subtotal = Column(String(32), nullable=True)
    amount_discount = Column(String(32), nullable=True)
    amount_tax = Column(String(32), nullable=True)
    amount_total = Column(String(32), nullable=True)
    currency = Column(String(10), nullable=True)

    plan_id = Column(String(36), nullable=True)
    price_id = Column(String(255), nullable=True)
    product_id = Column(String(255), nullable=True)
    subscription_id = Column(String(255), nullable=True, index=True)

    metadata_json = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("provider", "provider_order_id", name="uq_orders_provider_order"),
        Index("ix_orders_provider_type", "provider", "order_type"),
    )


class SubscriptionRow(Base):
    """Latest known provider state of a subscription, upserted on subscription_id."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(String(36), nullable=True)

    provider = Column(String(20), nullable=False)
    subscription_id = Column(String(255), nullable=False, unique=True, index=True)
    customer_id = Column(String(255), nullable=True, index=True)
    product_id = Column(String(255), nullable=True)
    price_id = Column(String(255), nullable=True)

    # Provider status verbatim: active | trialing | past_due | canceled | scheduled_cancel | ...
    status = Column(String(40), nullable=False)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    metadata_json = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class UsageRow(Base):
    """Per-user credit counters plus the subscription allocation state."""
    __tablename__ = "usage"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)

    subscription_credits_balance = Column(Integer, nullable=False, default=0)
    one_time_credits_balance = Column(Integer, nullable=False, default=0)

    # {"monthlyAllocationDetails": {...}} | {"yearlyAllocationDetails": {...}} | {}
    balance_jsonb = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    __table_args__ = (
        CheckConstraint("subscription_credits_balance >= 0", name="ck_usage_subscription_non_negative"),
        CheckConstraint("one_time_credits_balance >= 0", name="ck_usage_one_time_non_negative"),
    )


class CreditLogRow(Base):
    """Append-only audit trail. Written in the same transaction as the usage change."""
    __tablename__ = "credit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)  # signed
    # Counter the amount applies to: one_time | subscription
    bucket = Column(String(20), nullable=False)
    one_time_balance_after = Column(Integer, nullable=False)
    subscription_balance_after = Column(Integer, nullable=False)

    # one_time_purchase | subscription_grant | subscription_period_reset | refund_revoke | ...
    type = Column(String(40), nullable=False)
    notes = Column(Text, nullable=True)
    related_order_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_now, index=True)

    __table_args__ = (
        Index("ix_credit_logs_user_type", "user_id", "type"),
    )
