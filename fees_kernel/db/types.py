"""
Money precision and rounding.

Amounts are Decimal with two places everywhere: Numeric(18, 2) columns,
fee math, DTOs and log fields.  ``round_money`` is the one rounding rule
(half-up to cents); ``to_money`` normalizes what comes back from the
database, including the NULL of an empty SUM.
"""

from decimal import ROUND_HALF_UP, Decimal

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0.00")
_CENT = Decimal("0.01")


def round_money(value: Decimal, rounding: str = DEFAULT_ROUNDING) -> Decimal:
    """Round to cents, half-up unless told otherwise."""
    return value.quantize(_CENT, rounding=rounding)


def to_money(value: Decimal | int | str | float | None) -> Decimal:
    """
    A database scalar as a cent-rounded Decimal; None becomes 0.00.

    Some drivers hand back aggregates over NUMERIC as float, so floats are
    converted through their string form.  Caller-supplied amounts go
    through ``fees_kernel.domain.fee_math.coerce_amount`` instead, which
    rejects floats.
    """
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return round_money(value)
