"""Tests for subscription allocation state kept in usage.balance_jsonb."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from payledger.payments.allocation import (
    MONTHLY_KEY,
    YEARLY_KEY,
    MonthlyAllocation,
    YearlyAllocation,
    add_months,
    allocation_credits,
    parse_allocation,
    start_yearly,
    with_allocation,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestAddMonths:
    def test_same_day_next_month(self):
        assert add_months(_utc(2026, 1, 15), 1) == _utc(2026, 2, 15)

    def test_clamps_to_month_end(self):
        assert add_months(_utc(2026, 1, 31), 1) == _utc(2026, 2, 28)
        assert add_months(_utc(2028, 1, 31), 1) == _utc(2028, 2, 29)

    def test_rolls_over_year(self):
        assert add_months(_utc(2026, 12, 5), 1) == _utc(2027, 1, 5)
        assert add_months(_utc(2026, 11, 5), 14) == _utc(2028, 1, 5)


class TestYearlyAllocation:
    def test_start_yearly_counts_first_month_as_granted(self):
        alloc = start_yearly(300, 12, _utc(2026, 1, 10), "order-1")
        assert alloc.remaining_months == 11
        assert alloc.next_credit_date == _utc(2026, 2, 10)
        assert alloc.last_allocated_month == "2026-01"
        assert alloc.related_order_id == "order-1"

    def test_is_due(self):
        alloc = start_yearly(300, 12, _utc(2026, 1, 10))
        assert not alloc.is_due(_utc(2026, 2, 9))
        assert alloc.is_due(_utc(2026, 2, 10))

    def test_never_due_when_exhausted(self):
        alloc = YearlyAllocation(300, 0, _utc(2026, 1, 1), "2025-12")
        assert not alloc.is_due(_utc(2030, 1, 1))

    def test_advance(self):
        alloc = start_yearly(300, 12, _utc(2026, 1, 31)).advance()
        assert alloc.remaining_months == 10
        assert alloc.last_allocated_month == "2026-02"
        assert alloc.next_credit_date == _utc(2026, 3, 28)

    def test_naive_dates_are_treated_as_utc(self):
        alloc = YearlyAllocation(300, 3, datetime(2026, 2, 1), "2026-01")
        assert alloc.is_due(_utc(2026, 2, 1))


class TestBalanceJson:
    def test_parse_empty(self):
        assert parse_allocation(None) is None
        assert parse_allocation({}) is None

    def test_monthly_round_trip(self):
        data = with_allocation({}, MonthlyAllocation(300, "order-1"))
        assert data == {MONTHLY_KEY: {"monthlyCredits": 300, "relatedOrderId": "order-1"}}
        assert parse_allocation(data) == MonthlyAllocation(300, "order-1")

    def test_yearly_round_trip(self):
        alloc = start_yearly(300, 12, _utc(2026, 1, 10), "order-1")
        assert parse_allocation(with_allocation({}, alloc)) == alloc

    def test_switching_variant_drops_the_other_key(self):
        data = with_allocation({"other": 1}, MonthlyAllocation(300))
        data = with_allocation(data, start_yearly(300, 12, _utc(2026, 1, 1)))
        assert MONTHLY_KEY not in data
        assert YEARLY_KEY in data
        assert data["other"] == 1

    def test_clearing(self):
        data = with_allocation({MONTHLY_KEY: {"monthlyCredits": 300}}, None)
        assert data == {}

    def test_does_not_mutate_input(self):
        original = {MONTHLY_KEY: {"monthlyCredits": 300}}
        with_allocation(original, None)
        assert MONTHLY_KEY in original

    def test_unknown_variant_rejected(self):
        with pytest.raises(TypeError):
            with_allocation({}, {"monthlyCredits": 300})


def test_allocation_credits():
    assert allocation_credits(None) == 0
    assert allocation_credits(MonthlyAllocation(300)) == 300
    assert allocation_credits(start_yearly(250, 12, _utc(2026, 1, 1))) == 250
