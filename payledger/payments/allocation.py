"""Subscription allocation state stored in ``usage.balance_jsonb``.

A subscriber carries exactly one of two shapes, keyed in the JSON column:

- ``monthlyAllocationDetails``: the whole month is granted at renewal
- ``yearlyAllocationDetails``: a yearly plan paid up front, doled out one month at a time

Users without a subscription carry neither.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

MONTHLY_KEY = "monthlyAllocationDetails"
YEARLY_KEY = "yearlyAllocationDetails"


@dataclass(frozen=True)
class MonthlyAllocation:
    monthly_credits: int
    related_order_id: Optional[str] = None

    def to_json(self) -> dict:
        return {
            "monthlyCredits": self.monthly_credits,
            "relatedOrderId": self.related_order_id,
        }


@dataclass(frozen=True)
class YearlyAllocation:
    monthly_credits: int
    remaining_months: int
    next_credit_date: datetime
    last_allocated_month: str  # "YYYY-MM"
    related_order_id: Optional[str] = None

    def to_json(self) -> dict:
        return {
            "monthlyCredits": self.monthly_credits,
            "remainingMonths": self.remaining_months,
            "nextCreditDate": self.next_credit_date.isoformat(),
            "lastAllocatedMonth": self.last_allocated_month,
            "relatedOrderId": self.related_order_id,
        }

    def is_due(self, now: datetime) -> bool:
        return self.remaining_months > 0 and _as_utc(self.next_credit_date) <= _as_utc(now)

    def advance(self) -> "YearlyAllocation":
        """State after granting the month that was due."""
        return YearlyAllocation(
            monthly_credits=self.monthly_credits,
            remaining_months=self.remaining_months - 1,
            next_credit_date=add_months(self.next_credit_date, 1),
            last_allocated_month=month_key(self.next_credit_date),
            related_order_id=self.related_order_id,
        )


Allocation = Union[MonthlyAllocation, YearlyAllocation, None]


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` later, clamped to the last day of short months."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def month_key(dt: datetime) -> str:
    return f"{dt.year}-{dt.month:02d}"


def start_yearly(
    monthly_credits: int,
    total_months: int,
    period_start: datetime,
    related_order_id: Optional[str] = None,
) -> YearlyAllocation:
    """Allocation right after the first month of a yearly plan has been granted."""
    return YearlyAllocation(
        monthly_credits=monthly_credits,
        remaining_months=total_months - 1,
        next_credit_date=add_months(period_start, 1),
        last_allocated_month=month_key(period_start),
        related_order_id=related_order_id,
    )


def parse_allocation(balance_json: Optional[dict]) -> Allocation:
    """Read the allocation variant out of ``usage.balance_jsonb``."""
    data = balance_json or {}
    monthly = data.get(MONTHLY_KEY)
    if monthly:
        return MonthlyAllocation(
            monthly_credits=int(monthly.get("monthlyCredits") or 0),
            related_order_id=monthly.get("relatedOrderId"),
        )
    yearly = data.get(YEARLY_KEY)
    if yearly:
        return YearlyAllocation(
            monthly_credits=int(yearly.get("monthlyCredits") or 0),
            remaining_months=int(yearly.get("remainingMonths") or 0),
            next_credit_date=_as_utc(datetime.fromisoformat(yearly["nextCreditDate"])),
            last_allocated_month=yearly.get("lastAllocatedMonth") or "",
            related_order_id=yearly.get("relatedOrderId"),
        )
    return None


def with_allocation(balance_json: Optional[dict], allocation: Allocation) -> dict:
    """Copy of ``balance_jsonb`` carrying ``allocation`` and no other allocation key."""
    data = {
        k: v for k, v in (balance_json or {}).items()
        if k not in (MONTHLY_KEY, YEARLY_KEY)
    }
    if isinstance(allocation, MonthlyAllocation):
        data[MONTHLY_KEY] = allocation.to_json()
    elif isinstance(allocation, YearlyAllocation):
        data[YEARLY_KEY] = allocation.to_json()
    elif allocation is not None:
        raise TypeError(f"Unknown allocation variant: {allocation!r}")
    return data


def allocation_credits(allocation: Allocation) -> int:
    """Credits attributable to the current allocation period (0 when none)."""
    if isinstance(allocation, (MonthlyAllocation, YearlyAllocation)):
        return allocation.monthly_credits
    if allocation is None:
        return 0
    raise TypeError(f"Unknown allocation variant: {allocation!r}")
