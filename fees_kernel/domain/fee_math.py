"""
Fee math -- pure monetary rules of the engine.

Responsibility:
    Billing-cycle conversion, family discount proration, the net-amount
    clamp and the allocation status transition function.  Every amount
    crossing these functions is a Decimal rounded with ``round_money``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - net = max(0, gross - discount), and the persisted discount never
      exceeds gross.
    - Status is a function of (paid, net, due_date, today) only.

Failure modes:
    - InvalidAmountError from coerce_amount on floats, non-numeric input,
      sub-cent precision or non-positive values.
"""

from datetime import date
from decimal import Decimal, InvalidOperation

from fees_kernel.db.types import MONEY_DECIMAL_PLACES, ZERO, round_money
from fees_kernel.domain.enums import AllocationStatus, BillingCycle
from fees_kernel.exceptions import InvalidAmountError


def coerce_amount(value: object, allow_zero: bool = False) -> Decimal:
    """
    Parse a caller-supplied amount into a cent-precision Decimal.

    Accepts Decimal, int and numeric strings.  Floats, bools and values with
    more than two decimal places are rejected rather than rounded.
    """
    if isinstance(value, (float, bool)) or value is None:
        raise InvalidAmountError(repr(value), "must be a Decimal, int or numeric string")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(repr(value), "not a number") from None
    if not amount.is_finite():
        raise InvalidAmountError(str(value), "must be finite")
    if amount != round_money(amount):
        raise InvalidAmountError(
            str(value), f"more than {MONEY_DECIMAL_PLACES} decimal places",
        )
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountError(str(value), "must be greater than zero")
    return round_money(amount)


def to_monthly_amount(amount: Decimal, cycle: BillingCycle | str) -> Decimal:
    """
    Monthly equivalent of a fee charged once per billing cycle.

    QUARTERLY / 3, HALF_YEARLY / 6, YEARLY / 12, rounded half-up to cents.
    """
    months = BillingCycle(cycle).months
    if months == 1:
        return round_money(amount)
    return round_money(amount / Decimal(months))


def prorate_family_discount(
    family_discount: Decimal,
    active_sibling_count: int,
    is_active_sibling: bool = True,
) -> Decimal:
    """
    One student's share of the family discount for a period.

    The discount is split evenly across the siblings active in that period.
    A student who is not one of them, or a period with no active siblings,
    gets nothing.
    """
    if active_sibling_count <= 0 or not is_active_sibling:
        return ZERO
    return round_money(family_discount / Decimal(max(1, active_sibling_count)))


def compute_net(gross: Decimal, discount: Decimal) -> tuple[Decimal, Decimal]:
    """Return (clamped discount, net) for a gross amount and a raw discount."""
    gross = round_money(gross)
    clamped = min(round_money(discount), gross)
    if clamped < 0:
        clamped = ZERO
    return clamped, max(ZERO, gross - clamped)


def remaining_amount(net: Decimal, paid: Decimal) -> Decimal:
    return max(ZERO, round_money(net - paid))


def resolve_allocation_status(
    paid: Decimal,
    net: Decimal,
    due_date: date,
    today: date,
) -> AllocationStatus:
    """
    Status transition function.

    paid == 0       -> PENDING, or OVERDUE once today is past due_date
    0 < paid < net  -> PARTIAL (past due or not)
    paid >= net     -> PAID

    A zero-net allocation with nothing paid stays PENDING/OVERDUE; it only
    becomes PAID when a payment is applied to it, which never happens since
    its remaining amount is zero.
    """
    if paid <= 0:
        if today > due_date:
            return AllocationStatus.OVERDUE
        return AllocationStatus.PENDING
    if paid < net:
        return AllocationStatus.PARTIAL
    return AllocationStatus.PAID
