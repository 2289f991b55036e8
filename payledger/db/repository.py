"""Billing repository — lookups shared by webhook handlers, sync and verify-success."""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payledger.db.billing_tables import OrderRow, SubscriptionRow
from payledger.db.tables import PricingPlanRow, UserRow


class BillingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Plans ─────────────────────────────────────────────────────────────────

    async def get_plan(self, plan_id: str) -> Optional[PricingPlanRow]:
        return await self.session.get(PricingPlanRow, plan_id)

    async def plan_id_for_stripe_price(self, price_id: str) -> Optional[str]:
        result = await self.session.execute(
            select(PricingPlanRow.id).where(PricingPlanRow.stripe_price_id == price_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def plan_id_for_creem_product(self, product_id: str) -> Optional[str]:
        result = await self.session.execute(
            select(PricingPlanRow.id).where(PricingPlanRow.creem_product_id == product_id).limit(1)
        )
        return result.scalar_one_or_none()

    # ── Users ─────────────────────────────────────────────────────────────────

    async def user_id_for_stripe_customer(self, customer_id: str) -> Optional[str]:
        result = await self.session.execute(
            select(UserRow.id).where(UserRow.stripe_customer_id == customer_id).limit(1)
        )
        return result.scalar_one_or_none()

    # ── Subscriptions ─────────────────────────────────────────────────────────

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRow]:
        result = await self.session.execute(
            select(SubscriptionRow).where(SubscriptionRow.subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def subscription_user_id(self, subscription_id: str) -> Optional[str]:
        result = await self.session.execute(
            select(SubscriptionRow.user_id).where(SubscriptionRow.subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def find_user_subscription(self, subscription_id: str, user_id: str) -> Optional[SubscriptionRow]:
        result = await self.session.execute(
            select(SubscriptionRow).where(
                SubscriptionRow.subscription_id == subscription_id,
                SubscriptionRow.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_subscription(self, data: dict[str, Any]) -> SubscriptionRow:
        """Insert or update a subscription (keyed on subscription_id)."""
        existing = await self.get_subscription(data["subscription_id"])
        if existing is None:
            row = SubscriptionRow(**data)
            try:
                async with self.session.begin_nested():
                    self.session.add(row)
                    await self.session.flush()
                return row
            except IntegrityError:
                # Lost an insert race with a concurrent delivery; fall through to update
                existing = await self.get_subscription(data["subscription_id"])
                if existing is None:
                    raise

        for key, value in data.items():
            if key != "id":
                setattr(existing, key, value)
        await self.session.flush()
        return existing

    # ── Orders ────────────────────────────────────────────────────────────────

    async def find_user_order(
        self,
        provider: str,
        provider_order_id: str,
        user_id: str,
        order_type: Optional[str] = None,
    ) -> Optional[OrderRow]:
        stmt = select(OrderRow).where(
            OrderRow.provider == provider,
            OrderRow.provider_order_id == provider_order_id,
            OrderRow.user_id == user_id,
        )
        if order_type:
            stmt = stmt.where(OrderRow.order_type == order_type)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()
