"""Order ledger — idempotent order creation and refund bookkeeping.

Every external payment event maps to exactly one ``orders`` row keyed on
``(provider, provider_order_id)``. Callers own the session and commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payledger.db.billing_tables import OrderRow
from payledger.payments.constants import (
    OrderStatus,
    OrderType,
    Provider,
    REFUNDABLE_ORDER_TYPES,
)
from payledger.payments.currency import to_cents

logger = logging.getLogger(__name__)


@dataclass
class OrderResult:
    order: OrderRow
    existed: bool


def _provider_value(provider: Provider | str) -> str:
    return provider.value if isinstance(provider, Provider) else provider


async def _find_order(session: AsyncSession, provider: str, provider_order_id: str) -> Optional[OrderRow]:
    result = await session.execute(
        select(OrderRow).where(
            OrderRow.provider == provider,
            OrderRow.provider_order_id == provider_order_id,
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def get_order(session: AsyncSession, provider: Provider | str, provider_order_id: str) -> Optional[OrderRow]:
    return await _find_order(session, _provider_value(provider), provider_order_id)


async def create_order_with_idempotency(
    session: AsyncSession,
    provider: Provider | str,
    order_data: dict[str, Any],
    external_key: str,
) -> OrderResult:
    """Insert an order unless one already exists for ``(provider, external_key)``.

    ``existed=True`` tells the caller to skip side effects; only the credit
    grant, which is idempotent per order, may run again. A concurrent
    delivery that wins the race trips the unique constraint; the savepoint is
    rolled back and the winner's row returned as existing.
    """
    provider = _provider_value(provider)
    existing = await _find_order(session, provider, external_key)
    if existing is not None:
        logger.info("Order %s/%s already recorded — skipping", provider, external_key)
        return OrderResult(order=existing, existed=True)

    row = OrderRow(**{**order_data, "provider": provider, "provider_order_id": external_key})
    try:
        async with session.begin_nested():
            session.add(row)
            await session.flush()
    except IntegrityError:
        winner = await _find_order(session, provider, external_key)
        if winner is None:
            raise
        logger.info("Order %s/%s inserted concurrently — treating as duplicate", provider, external_key)
        return OrderResult(order=winner, existed=True)

    return OrderResult(order=row, existed=False)


async def find_original_order_for_refund(
    session: AsyncSession,
    provider: Provider | str,
    payment_reference: str,
) -> Optional[OrderRow]:
    """Non-refund order the refund points at, or ``None`` for an orphaned refund."""
    result = await session.execute(
        select(OrderRow).where(
            OrderRow.provider == _provider_value(provider),
            OrderRow.payment_reference == payment_reference,
            OrderRow.order_type.in_(REFUNDABLE_ORDER_TYPES),
        ).order_by(OrderRow.created_at).limit(1)
    )
    return result.scalar_one_or_none()


async def update_order_status_after_refund(
    session: AsyncSession,
    order_id: str,
    refunded_minor: int,
    original_minor: int,
) -> str:
    """Mark the original order ``refunded`` on a full refund, else ``partially_refunded``."""
    order = await session.get(OrderRow, order_id)
    if order is None:
        raise LookupError(f"Order {order_id} not found")
    is_full = abs(int(refunded_minor)) == int(original_minor)
    order.status = (OrderStatus.REFUNDED if is_full else OrderStatus.PARTIALLY_REFUNDED).value
    await session.flush()
    return order.status


async def refund_order_exists(session: AsyncSession, provider: Provider | str, refund_id: str) -> bool:
    result = await session.execute(
        select(OrderRow.id).where(
            OrderRow.provider == _provider_value(provider),
            OrderRow.order_type == OrderType.REFUND.value,
            OrderRow.provider_order_id == refund_id,
        ).limit(1)
    )
    return result.first() is not None


async def booked_refund_minor(session: AsyncSession, provider: Provider | str, payment_reference: str) -> int:
    """Minor units already booked as refunds against ``payment_reference``."""
    result = await session.execute(
        select(OrderRow.amount_total).where(
            OrderRow.provider == _provider_value(provider),
            OrderRow.order_type == OrderType.REFUND.value,
            OrderRow.payment_reference == payment_reference,
        )
    )
    return sum(abs(to_cents(amount)) for amount in result.scalars().all())
