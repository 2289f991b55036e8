"""Subscription state synchronizer — mirror the provider's subscription into our table.

Always re-fetches from the provider so out-of-order webhooks converge on the
latest state. Safe to call any number of times.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payledger.db.billing_tables import SubscriptionRow
from payledger.db.repository import BillingRepository
from payledger.providers.base import PaymentProviderAdapter

logger = logging.getLogger(__name__)


class SubscriptionSynchronizer:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def sync(
        self,
        adapter: PaymentProviderAdapter,
        subscription_id: str,
        customer_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[SubscriptionRow]:
        """Upsert the provider's view of ``subscription_id``. Returns ``None`` when it cannot be attributed."""
        subscription = await adapter.fetch_subscription(subscription_id)
        merged = {**subscription.metadata, **(metadata or {})}
        customer_id = subscription.customer_id or customer_id

        async with self.session_factory() as session:
            repo = BillingRepository(session)

            user_id = merged.get("userId") or await repo.subscription_user_id(subscription.id)
            if not user_id:
                user_id = await adapter.find_user_id(repo, customer_id)
            if not user_id:
                logger.error(
                    "Cannot sync %s subscription %s: no userId in metadata, store or customer %s",
                    adapter.provider.value, subscription.id, customer_id,
                )
                return None

            plan_id = merged.get("planId") or await adapter.find_plan_id(repo, subscription)
            if not plan_id:
                logger.error(
                    "Cannot sync %s subscription %s: no plan for price=%s product=%s",
                    adapter.provider.value, subscription.id, subscription.price_id, subscription.product_id,
                )
                return None

            row = await repo.upsert_subscription({
                "user_id": user_id,
                "plan_id": plan_id,
                "provider": adapter.provider.value,
                "subscription_id": subscription.id,
                "customer_id": customer_id,
                "product_id": subscription.product_id,
                "price_id": subscription.price_id,
                "status": subscription.status,
                "current_period_start": subscription.current_period_start,
                "current_period_end": subscription.current_period_end,
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "canceled_at": subscription.canceled_at,
                "ended_at": subscription.ended_at,
                "trial_start": subscription.trial_start,
                "trial_end": subscription.trial_end,
                "metadata_json": {
                    **merged,
                    "userId": user_id,
                    "planId": plan_id,
                },
            })
            await session.commit()

        logger.info(
            "Synced %s subscription %s for user %s: status=%s",
            adapter.provider.value, subscription.id, user_id, subscription.status,
        )
        return row
