"""SQLAlchemy ORM base plus the collaborator-owned tables (users, pricing plans)."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, JSON, Boolean, Index
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    """Application user. Only the billing-relevant columns live here."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=True, unique=True, index=True)
    name = Column(String(200), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class PricingPlanRow(Base):
    """Plan catalogue (CMS-owned). Read here to map provider prices to credit benefits."""
    __tablename__ = "pricing_plans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    card_title = Column(String(200), nullable=False, default="")

    # Provider: stripe | creem
    provider = Column(String(20), nullable=False, default="stripe")
    stripe_price_id = Column(String(255), nullable=True, index=True)
    stripe_product_id = Column(String(255), nullable=True)
    creem_product_id = Column(String(255), nullable=True, index=True)

    # Payment type: one_time | onetime | recurring
    payment_type = Column(String(20), nullable=True)
    # Interval: month | year | every-month | every-year | once
    recurring_interval = Column(String(20), nullable=True)

    price = Column(String(32), nullable=True)  # decimal string, e.g. "9.99"
    currency = Column(String(10), nullable=True)

    # {"oneTimeCredits": 500} or {"monthlyCredits": 300, "totalMonths": 12}
    benefits_jsonb = Column(JSON, default=dict)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_pricing_plans_provider", "provider"),
    )
