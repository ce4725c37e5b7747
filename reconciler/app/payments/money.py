"""Money conversions applied at the processor boundary."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = Decimal(100)

DEFAULT_FEE_RATE = Decimal("0.029")
DEFAULT_FIXED_FEE = Decimal("0.30")
DEFAULT_REVENUE_SHARE = Decimal("0.75")


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_major_units(minor: Union[int, str, None]) -> Decimal:
    """Convert a processor amount in cents into a two-place decimal.

    Called exactly once per amount, where processor payloads enter the engine.
    """

    if minor is None:
        return Decimal("0.00")
    if isinstance(minor, bool) or isinstance(minor, float):
        raise TypeError("minor unit amounts must be integers")
    return round_cents(Decimal(int(minor)) / MINOR_UNITS_PER_MAJOR)


def to_minor_units(amount: Decimal) -> int:
    return int(round_cents(amount) * MINOR_UNITS_PER_MAJOR)


def processor_fee(
    amount: Decimal,
    *,
    fee_rate: Decimal = DEFAULT_FEE_RATE,
    fixed_fee: Decimal = DEFAULT_FIXED_FEE,
) -> Decimal:
    return amount * fee_rate + fixed_fee


def potential_earnings(
    amount: Decimal,
    *,
    fee_rate: Decimal = DEFAULT_FEE_RATE,
    fixed_fee: Decimal = DEFAULT_FIXED_FEE,
    revenue_share: Decimal = DEFAULT_REVENUE_SHARE,
) -> Decimal:
    """Worker share of a service amount after the processor fee, to the cent.

    Never negative: amounts below the fixed fee earn nothing.
    """

    net = amount - processor_fee(amount, fee_rate=fee_rate, fixed_fee=fixed_fee)
    return max(round_cents(net * revenue_share), Decimal("0.00"))


__all__ = [
    "CENT",
    "potential_earnings",
    "processor_fee",
    "round_cents",
    "to_major_units",
    "to_minor_units",
]
