"""Credit manager — provider-agnostic grants and revocations on the usage ledger.

Each mutation runs in its own transaction: lock (or lazily create) the user's
``usage`` row, change a counter, append the matching ``credit_logs`` row.
Mutations are retried per ``RetryPolicy`` and re-raised on exhaustion.

Grants:
- One-time purchase: ``oneTimeCredits`` added to the one-time balance
- Monthly subscription: subscription balance reset to ``monthlyCredits``
- Yearly subscription: same reset, plus a yearly allocation drained monthly
  by ``allocate_due_yearly_credits``

Revocations clamp at zero and log only what was actually removed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payledger.db.billing_tables import CreditLogRow, OrderRow, UsageRow
from payledger.db.tables import PricingPlanRow
from payledger.payments.allocation import (
    Allocation,
    MonthlyAllocation,
    YearlyAllocation,
    allocation_credits,
    parse_allocation,
    start_yearly,
    with_allocation,
)
from payledger.payments.constants import (
    CreditBucket,
    CreditLogType,
    Provider,
    is_monthly_interval,
    is_yearly_interval,
)
from payledger.payments.currency import to_cents
from payledger.payments.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PlanNotFoundError(LookupError):
    pass


def _ms_to_dt(ms: int | float | None) -> datetime:
    if ms is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


class CreditManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession],
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory
        self.retry = retry_policy or RetryPolicy()

    # ── Primitives ────────────────────────────────────────────────────────────

    async def _load_plan(self, plan_id: Optional[str]) -> PricingPlanRow:
        if not plan_id:
            raise PlanNotFoundError("Plan ID is required to resolve credit benefits")
        async with self.session_factory() as session:
            plan = await session.get(PricingPlanRow, plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Could not fetch plan benefits for {plan_id}")
        return plan

    @staticmethod
    async def _lock_usage(session: AsyncSession, user_id: str, create: bool = True) -> Optional[UsageRow]:
        result = await session.execute(
            select(UsageRow).where(UsageRow.user_id == user_id).with_for_update()
        )
        usage = result.scalar_one_or_none()
        if usage is None and create:
            usage = UsageRow(
                user_id=user_id,
                one_time_credits_balance=0,
                subscription_credits_balance=0,
                balance_jsonb={},
            )
            session.add(usage)
            await session.flush()
        return usage

    @staticmethod
    async def _already_granted(session: AsyncSession, order_id: str, log_type: CreditLogType) -> bool:
        result = await session.execute(
            select(CreditLogRow.id).where(
                CreditLogRow.related_order_id == order_id,
                CreditLogRow.type == log_type.value,
            ).limit(1)
        )
        return result.first() is not None

    @staticmethod
    def _log(
        session: AsyncSession,
        usage: UsageRow,
        amount: int,
        bucket: CreditBucket,
        log_type: CreditLogType,
        notes: str,
        related_order_id: Optional[str] = None,
    ) -> None:
        session.add(CreditLogRow(
            user_id=usage.user_id,
            amount=amount,
            bucket=bucket.value,
            one_time_balance_after=usage.one_time_credits_balance,
            subscription_balance_after=usage.subscription_credits_balance,
            type=log_type.value,
            notes=notes,
            related_order_id=related_order_id,
        ))

    def _apply_revocation(
        self,
        session: AsyncSession,
        usage: UsageRow,
        bucket: CreditBucket,
        amount: int,
        log_type: CreditLogType,
        notes: str,
        related_order_id: Optional[str] = None,
        clear_allocation: bool = False,
    ) -> int:
        """Subtract up to ``amount`` from ``bucket``, never below zero. Returns credits removed."""
        if clear_allocation:
            usage.balance_jsonb = with_allocation(usage.balance_jsonb, None)

        if bucket is CreditBucket.ONE_TIME:
            current = usage.one_time_credits_balance or 0
        else:
            current = usage.subscription_credits_balance or 0
        new_balance = max(current - max(amount, 0), 0)
        revoked = current - new_balance
        if revoked == 0:
            return 0

        if bucket is CreditBucket.ONE_TIME:
            usage.one_time_credits_balance = new_balance
        else:
            usage.subscription_credits_balance = new_balance
        self._log(session, usage, -revoked, bucket, log_type, notes, related_order_id)
        return revoked

    def _reset_subscription_balance(
        self,
        session: AsyncSession,
        usage: UsageRow,
        credits: int,
        allocation: Allocation,
        notes: str,
        related_order_id: Optional[str],
    ) -> None:
        """Replace the subscription balance with ``credits``; the audit log records both halves."""
        previous = usage.subscription_credits_balance or 0
        if previous:
            usage.subscription_credits_balance = 0
            self._log(
                session, usage, -previous, CreditBucket.SUBSCRIPTION,
                CreditLogType.SUBSCRIPTION_PERIOD_RESET,
                f"Previous period balance of {previous} credits expired.",
                related_order_id,
            )
        usage.subscription_credits_balance = credits
        usage.balance_jsonb = with_allocation(usage.balance_jsonb, allocation)
        self._log(
            session, usage, credits, CreditBucket.SUBSCRIPTION,
            CreditLogType.SUBSCRIPTION_GRANT, notes, related_order_id,
        )

    # ── Grants ────────────────────────────────────────────────────────────────

    async def upgrade_one_time_credits(self, user_id: str, plan_id: str, order_id: str) -> int:
        """Add the plan's ``oneTimeCredits`` to the one-time balance. Returns credits granted."""
        plan = await self._load_plan(plan_id)
        credits = int((plan.benefits_jsonb or {}).get("oneTimeCredits") or 0)
        if credits <= 0:
            logger.info("Plan %s grants no one-time credits — nothing to do for order %s", plan_id, order_id)
            return 0

        async def _grant() -> int:
            async with self.session_factory() as session:
                async with session.begin():
                    usage = await self._lock_usage(session, user_id)
                    if await self._already_granted(session, order_id, CreditLogType.ONE_TIME_PURCHASE):
                        return 0
                    usage.one_time_credits_balance = (usage.one_time_credits_balance or 0) + credits
                    self._log(
                        session, usage, credits, CreditBucket.ONE_TIME,
                        CreditLogType.ONE_TIME_PURCHASE,
                        f"One-time purchase of plan {plan_id}: {credits} credits granted.",
                        order_id,
                    )
            return credits

        granted = await self.retry.run(_grant, f"one-time credit grant for user {user_id}")
        if not granted:
            logger.info("One-time credits for order %s were already granted", order_id)
            return 0
        logger.info("Granted %d one-time credits to user %s (order %s)", granted, user_id, order_id)
        return granted

    async def upgrade_subscription_credits(
        self,
        user_id: str,
        plan_id: str,
        order_id: str,
        current_period_start_ms: int | float | None = None,
    ) -> int:
        """Reset the subscription balance to one month of the plan's credits.

        Monthly plans store a monthly allocation; yearly plans with
        ``totalMonths`` store a yearly allocation whose remaining months are
        granted by ``allocate_due_yearly_credits``.
        """
        if not user_id:
            raise ValueError(f"User ID is required to grant subscription credits for order {order_id}")

        plan = await self._load_plan(plan_id)
        benefits = plan.benefits_jsonb or {}
        monthly_credits = int(benefits.get("monthlyCredits") or 0)
        total_months = int(benefits.get("totalMonths") or 0)
        interval = plan.recurring_interval

        allocation: Allocation
        if is_monthly_interval(interval) and monthly_credits > 0:
            allocation = MonthlyAllocation(monthly_credits=monthly_credits, related_order_id=order_id)
            notes = f"Monthly subscription credits granted: {monthly_credits}."
        elif is_yearly_interval(interval) and monthly_credits > 0 and total_months > 0:
            allocation = start_yearly(
                monthly_credits, total_months, _ms_to_dt(current_period_start_ms), order_id,
            )
            notes = (
                f"Yearly subscription month 1 of {total_months}: "
                f"{monthly_credits} credits granted."
            )
        else:
            logger.info(
                "Plan %s (interval=%s) grants no subscription credits — nothing to do for order %s",
                plan_id, interval, order_id,
            )
            return 0

        async def _grant() -> int:
            async with self.session_factory() as session:
                async with session.begin():
                    usage = await self._lock_usage(session, user_id)
                    if await self._already_granted(session, order_id, CreditLogType.SUBSCRIPTION_GRANT):
                        return 0
                    self._reset_subscription_balance(
                        session, usage, monthly_credits, allocation, notes, order_id,
                    )
            return monthly_credits

        granted = await self.retry.run(_grant, f"subscription credit grant for user {user_id}")
        if not granted:
            logger.info("Subscription credits for order %s were already granted", order_id)
            return 0
        logger.info(
            "Set subscription credits for user %s to %d (order %s, %s)",
            user_id, granted, order_id, type(allocation).__name__,
        )
        return granted

    async def allocate_due_yearly_credits(self, now: Optional[datetime] = None) -> int:
        """Grant the next month to every yearly subscriber whose credit date has passed.

        Returns the number of users allocated. Missed months are skipped over
        in one step since each month replaces the previous balance.
        """
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as session:
            rows = (await session.execute(select(UsageRow.user_id, UsageRow.balance_jsonb))).all()

        due_users = [
            user_id for user_id, balance_json in rows
            if isinstance(parse_allocation(balance_json), YearlyAllocation)
            and parse_allocation(balance_json).is_due(now)
        ]

        allocated = 0
        for user_id in due_users:
            async def _allocate(user_id: str = user_id) -> bool:
                async with self.session_factory() as session:
                    async with session.begin():
                        usage = await self._lock_usage(session, user_id, create=False)
                        allocation = parse_allocation(usage.balance_jsonb) if usage else None
                        if not isinstance(allocation, YearlyAllocation) or not allocation.is_due(now):
                            return False
                        while allocation.is_due(now):
                            allocation = allocation.advance()
                        self._reset_subscription_balance(
                            session, usage, allocation.monthly_credits, allocation,
                            f"Yearly subscription monthly allocation for {allocation.last_allocated_month}: "
                            f"{allocation.monthly_credits} credits granted, "
                            f"{allocation.remaining_months} months remaining.",
                            allocation.related_order_id,
                        )
                return True

            try:
                if await self.retry.run(_allocate, f"yearly allocation for user {user_id}"):
                    allocated += 1
            except Exception:
                logger.exception("Yearly allocation failed for user %s", user_id)

        if allocated:
            logger.info("Yearly allocation granted monthly credits to %d users", allocated)
        return allocated

    # ── Revocations ───────────────────────────────────────────────────────────

    async def revoke_one_time_credits(
        self,
        refund_minor: int,
        original_order: OrderRow,
        refund_order_id: Optional[str] = None,
    ) -> int:
        """Remove the plan's one-time credits after a full refund. Partial refunds keep credits."""
        original_minor = to_cents(original_order.amount_total)
        if abs(int(refund_minor)) != original_minor:
            logger.info(
                "Partial refund (%s of %s) on order %s — one-time credits kept",
                refund_minor, original_minor, original_order.id,
            )
            return 0

        try:
            plan = await self._load_plan(original_order.plan_id)
        except PlanNotFoundError:
            logger.warning("Cannot revoke credits for order %s: plan %s not found", original_order.id, original_order.plan_id)
            return 0
        credits = int((plan.benefits_jsonb or {}).get("oneTimeCredits") or 0)
        if credits <= 0:
            return 0

        user_id = original_order.user_id

        async def _revoke() -> int:
            async with self.session_factory() as session:
                async with session.begin():
                    usage = await self._lock_usage(session, user_id, create=False)
                    if usage is None:
                        return 0
                    return self._apply_revocation(
                        session, usage, CreditBucket.ONE_TIME, credits,
                        CreditLogType.REFUND_REVOKE,
                        f"Full refund for order {original_order.id}: one-time credits revoked.",
                        refund_order_id or original_order.id,
                    )

        revoked = await self.retry.run(_revoke, f"one-time credit revocation for user {user_id}")
        logger.info("Revoked %d one-time credits from user %s (order %s)", revoked, user_id, original_order.id)
        return revoked

    async def revoke_subscription_credits(
        self,
        original_order: OrderRow,
        refund_minor: Optional[int] = None,
    ) -> int:
        """Remove the current allocation's credits and clear the allocation.

        When ``refund_minor`` is given, only a full refund of the original order revokes.
        """
        if refund_minor is not None and abs(int(refund_minor)) != to_cents(original_order.amount_total):
            logger.info("Partial refund on subscription order %s — credits kept", original_order.id)
            return 0

        user_id = original_order.user_id

        async def _revoke() -> int:
            async with self.session_factory() as session:
                async with session.begin():
                    usage = await self._lock_usage(session, user_id, create=False)
                    if usage is None:
                        return 0
                    allocation = parse_allocation(usage.balance_jsonb)
                    amount = allocation_credits(allocation)
                    return self._apply_revocation(
                        session, usage, CreditBucket.SUBSCRIPTION, amount,
                        CreditLogType.REFUND_REVOKE,
                        f"Refund for subscription order {original_order.id}: "
                        f"current period credits revoked.",
                        original_order.id,
                        clear_allocation=allocation is not None,
                    )

        revoked = await self.retry.run(_revoke, f"subscription credit revocation for user {user_id}")
        logger.info("Revoked %d subscription credits from user %s (order %s)", revoked, user_id, original_order.id)
        return revoked

    async def revoke_remaining_subscription_credits_on_end(
        self,
        provider: Provider | str,
        subscription_id: str,
        user_id: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """Zero the subscription balance and clear allocation state when a subscription ends."""
        provider = provider.value if isinstance(provider, Provider) else provider
        if not user_id:
            logger.warning(
                "Cannot revoke remaining credits for %s subscription %s: user unknown (metadata=%s)",
                provider, subscription_id, metadata,
            )
            return 0

        async def _revoke() -> int:
            async with self.session_factory() as session:
                async with session.begin():
                    usage = await self._lock_usage(session, user_id, create=False)
                    if usage is None:
                        return 0
                    return self._apply_revocation(
                        session, usage, CreditBucket.SUBSCRIPTION,
                        usage.subscription_credits_balance or 0,
                        CreditLogType.SUBSCRIPTION_ENDED_REVOKE,
                        f"{provider} subscription {subscription_id} ended; remaining credits revoked.",
                        None,
                        clear_allocation=True,
                    )

        revoked = await self.retry.run(_revoke, f"end-of-subscription revocation for user {user_id}")
        logger.info(
            "Revoked %d remaining subscription credits from user %s (%s subscription %s)",
            revoked, user_id, provider, subscription_id,
        )
        return revoked

    # ── Audit ─────────────────────────────────────────────────────────────────

    async def replay_credit_logs(self, user_id: str) -> dict[str, int]:
        """Sum of logged amounts per bucket; equals the usage counters when the ledger is consistent."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreditLogRow.bucket, func.coalesce(func.sum(CreditLogRow.amount), 0))
                .where(CreditLogRow.user_id == user_id)
                .group_by(CreditLogRow.bucket)
            )
            totals = {bucket: int(total) for bucket, total in result.all()}
        return {
            CreditBucket.ONE_TIME.value: totals.get(CreditBucket.ONE_TIME.value, 0),
            CreditBucket.SUBSCRIPTION.value: totals.get(CreditBucket.SUBSCRIPTION.value, 0),
        }

    async def find_ledger_mismatches(self) -> list[dict[str, Any]]:
        """Users whose counters differ from the replayed audit log."""
        async with self.session_factory() as session:
            usages = (await session.execute(select(UsageRow).order_by(UsageRow.user_id))).scalars().all()

        mismatches = []
        for usage in usages:
            replayed = await self.replay_credit_logs(usage.user_id)
            stored = {
                CreditBucket.ONE_TIME.value: usage.one_time_credits_balance,
                CreditBucket.SUBSCRIPTION.value: usage.subscription_credits_balance,
            }
            if replayed != stored:
                mismatches.append({"user_id": usage.user_id, "stored": stored, "replayed": replayed})
        return mismatches
