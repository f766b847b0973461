"""
GlobalConnect — core/money.py
─────────────────────────────────────────────────────────────────
Fixed-point money helpers.

Amounts are Decimal, quantized to 4 places. The database stores
them as INTEGER units of 1/10000 so that SQL increments
(amount_units = amount_units + ?) stay exact.
─────────────────────────────────────────────────────────────────
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from globalconnect.core.errors import InvalidAmount

MONEY_PLACES = Decimal("0.0001")
UNITS_PER_MAJOR = 10_000
ZERO = Decimal("0.0000")

Number = Union[Decimal, int, str]


def to_money(value: Number) -> Decimal:
    """
    Coerce to a quantized Decimal.
    Floats are accepted only through their str() form so that 0.1
    stays 0.1 instead of 0.1000000000000000055511151231257827.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    return amount.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def to_units(value: Number) -> int:
    return int(to_money(value) * UNITS_PER_MAJOR)


def from_units(units) -> Decimal:
    return (Decimal(int(units or 0)) / UNITS_PER_MAJOR).quantize(MONEY_PLACES)


def minor_to_money(minor: int) -> Decimal:
    """Provider amounts (cents / paise) → major units."""
    return to_money(Decimal(int(minor)) / 100)


def money_to_minor(amount: Decimal) -> int:
    """Major units → provider amounts (cents / paise), rounded half-up."""
    return int((to_money(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
