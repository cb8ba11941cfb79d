"""
Money helpers -- integer minor units and basis-point rates.

Responsibility:
    All settlement amounts are ``int`` minor units (paise, cents).  Rates are
    ``int`` basis points.  Intermediate products are exact ``Decimal`` values;
    conversion back to minor units happens once, at the end of a calculation.

Invariants enforced:
    - No float arithmetic anywhere in the money path.
    - Rounding to minor units is ROUND_HALF_UP unless a caller explicitly
      floors (commission residual distribution).
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation, localcontext

BPS_DENOMINATOR = 10_000

# Ceiling for a single amount in minor units; anything larger is treated as
# a computation anomaly rather than money.
MAX_MINOR_AMOUNT = 10**15

_EXACT_PRECISION = 60


def percent_to_bps(value: str | int | Decimal) -> int:
    """Convert a percent (``"10"``, ``"0.05"``) into integer basis points.

    Raises:
        ValueError: If the value is not numeric or has finer precision than
            one basis point.
    """
    if isinstance(value, float):
        value = repr(value)
    try:
        bps = Decimal(str(value)) * 100
    except InvalidOperation:
        raise ValueError(f"Not a percentage: {value!r}") from None
    if bps != bps.to_integral_value():
        raise ValueError(
            f"Percentage {value!r} is finer than one basis point"
        )
    return int(bps)


def bps_to_percent(bps: int) -> Decimal:
    return Decimal(bps) / 100


def apply_bps(amount: int | Decimal, bps: int) -> Decimal:
    """Exact ``amount * bps / 10000`` with no rounding."""
    with localcontext() as ctx:
        ctx.prec = _EXACT_PRECISION
        return Decimal(amount) * Decimal(bps) / Decimal(BPS_DENOMINATOR)


def round_half_up_to_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def floor_to_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_FLOOR))

