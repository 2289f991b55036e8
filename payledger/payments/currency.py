"""Minor-unit ↔ decimal-string conversion for order amounts."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

_CENT = Decimal("100")


def to_currency_amount(minor: Optional[Union[int, float]]) -> str:
    """Minor units → decimal string. ``None`` → ``"0"``.

    >>> to_currency_amount(1999)
    '19.99'
    >>> to_currency_amount(500)
    '5'
    >>> to_currency_amount(-500)
    '-5'
    """
    if minor is None:
        return "0"
    value = Decimal(str(minor)) / _CENT
    # Drop trailing zeros so 500 → "5" and 1050 → "10.5"
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f")


def to_cents(amount: Optional[str]) -> int:
    """Decimal string → minor units, rounding half up. Empty / unparseable → 0.

    >>> to_cents("19.99")
    1999
    >>> to_cents(None)
    0
    """
    if not amount:
        return 0
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return 0
    return int((value * _CENT).quantize(Decimal(1), rounding=ROUND_HALF_UP))

