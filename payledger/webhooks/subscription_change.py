"""Plan change detection for subscription updates (upgrade / downgrade / interval switch).

Classification compares the previous and current pricing plans. What to do
about a change (proration, credit top-ups) is left to a
``SubscriptionChangeHandler``; the default implementation only logs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from payledger.db.repository import BillingRepository
from payledger.payments.constants import normalize_interval
from payledger.providers.base import ProviderSubscription

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    MONTHLY_TO_MONTHLY_UPGRADE = "monthly_to_monthly_upgrade"
    MONTHLY_TO_MONTHLY_DOWNGRADE = "monthly_to_monthly_downgrade"
    YEARLY_TO_YEARLY_UPGRADE = "yearly_to_yearly_upgrade"
    YEARLY_TO_YEARLY_DOWNGRADE = "yearly_to_yearly_downgrade"
    MONTHLY_TO_YEARLY_CHANGE = "monthly_to_yearly_change"
    YEARLY_TO_MONTHLY_CHANGE = "yearly_to_monthly_change"
    NONE = "none"


@dataclass
class SubscriptionChange:
    change_type: ChangeType = ChangeType.NONE
    previous_price_id: Optional[str] = None
    current_price_id: Optional[str] = None
    previous_plan_id: Optional[str] = None
    current_plan_id: Optional[str] = None
    previous_interval: Optional[str] = None
    current_interval: Optional[str] = None
    previous_price: Optional[str] = None
    current_price: Optional[str] = None


def _amount(price: Optional[str]) -> Decimal:
    try:
        return Decimal(price or "0")
    except InvalidOperation:
        return Decimal("0")


def classify_change(
    previous_interval: Optional[str],
    current_interval: Optional[str],
    previous_amount: Decimal,
    current_amount: Decimal,
) -> ChangeType:
    prev = normalize_interval(previous_interval)
    curr = normalize_interval(current_interval)
    if prev != curr:
        key = f"{prev}_to_{curr}_change"
    elif previous_amount == current_amount:
        return ChangeType.NONE
    else:
        direction = "upgrade" if current_amount > previous_amount else "downgrade"
        key = f"{curr}_to_{curr}_{direction}"
    try:
        return ChangeType(key)
    except ValueError:
        logger.warning("Unrecognized subscription change %s — treating as none", key)
        return ChangeType.NONE


async def detect_subscription_change(
    repo: BillingRepository,
    current_price_id: Optional[str],
    previous_price_id: Optional[str],
) -> SubscriptionChange:
    """Look up both Stripe prices' plans and classify the move between them."""
    if not current_price_id or not previous_price_id or current_price_id == previous_price_id:
        return SubscriptionChange()

    current_plan_id = await repo.plan_id_for_stripe_price(current_price_id)
    previous_plan_id = await repo.plan_id_for_stripe_price(previous_price_id)
    current_plan = await repo.get_plan(current_plan_id) if current_plan_id else None
    previous_plan = await repo.get_plan(previous_plan_id) if previous_plan_id else None
    if current_plan is None or previous_plan is None:
        logger.warning(
            "Could not find plan data for price comparison. Current: %s, Previous: %s",
            current_price_id, previous_price_id,
        )
        return SubscriptionChange()

    current_interval = (current_plan.recurring_interval or "").lower() or None
    previous_interval = (previous_plan.recurring_interval or "").lower() or None
    return SubscriptionChange(
        change_type=classify_change(
            previous_interval, current_interval,
            _amount(previous_plan.price), _amount(current_plan.price),
        ),
        previous_price_id=previous_price_id,
        current_price_id=current_price_id,
        previous_plan_id=previous_plan.id,
        current_plan_id=current_plan.id,
        previous_interval=previous_interval,
        current_interval=current_interval,
        previous_price=previous_plan.price,
        current_price=current_plan.price,
    )


class SubscriptionChangeHandler:
    """Reacts to classified plan changes. Override the per-type hooks to prorate credits."""

    async def handle(
        self,
        subscription: ProviderSubscription,
        user_id: Optional[str],
        change: SubscriptionChange,
    ) -> None:
        if not user_id:
            logger.error("Cannot handle subscription change: userId missing for subscription %s", subscription.id)
            return
        hook = {
            ChangeType.MONTHLY_TO_MONTHLY_UPGRADE: self.monthly_to_monthly_upgrade,
            ChangeType.MONTHLY_TO_MONTHLY_DOWNGRADE: self.monthly_to_monthly_downgrade,
            ChangeType.YEARLY_TO_YEARLY_UPGRADE: self.yearly_to_yearly_upgrade,
            ChangeType.YEARLY_TO_YEARLY_DOWNGRADE: self.yearly_to_yearly_downgrade,
            ChangeType.MONTHLY_TO_YEARLY_CHANGE: self.monthly_to_yearly_change,
            ChangeType.YEARLY_TO_MONTHLY_CHANGE: self.yearly_to_monthly_change,
        }.get(change.change_type)
        if hook is None:
            logger.info("No subscription change detected for subscription %s", subscription.id)
            return
        await hook(subscription, user_id, change)

    async def _log_change(self, subscription: ProviderSubscription, user_id: str, change: SubscriptionChange) -> None:
        logger.info(
            "Subscription %s for user %s: %s (%s → %s, plan %s → %s)",
            subscription.id, user_id, change.change_type.value,
            change.previous_price_id, change.current_price_id,
            change.previous_plan_id, change.current_plan_id,
        )

    async def monthly_to_monthly_upgrade(self, subscription, user_id, change) -> None:
        await self._log_change(subscription, user_id, change)

    async def monthly_to_monthly_downgrade(self, subscription, user_id, change) -> None:
        await self._log_change(subscription, user_id, change)

    async def yearly_to_yearly_upgrade(self, subscription, user_id, change) -> None:
        await self._log_change(subscription, user_id, change)

    async def yearly_to_yearly_downgrade(self, subscription, user_id, change) -> None:
        await self._log_change(subscription, user_id, change)

    async def monthly_to_yearly_change(self, subscription, user_id, change) -> None:
        await self._log_change(subscription, user_id, change)

    async def yearly_to_monthly_change(self, subscription, user_id, change) -> None:
        await self._log_change(subscription, user_id, change)
