"""
Enums shared by the ORM models and the pure domain.

Stored as their string value in String(20) columns.
"""

from enum import Enum


class AllocationStatus(str, Enum):
    """Reconciliation status of a fee allocation.

    PENDING  -- nothing paid, not yet past due
    PARTIAL  -- 0 < paid < net (also used for past-due partial payments)
    PAID     -- paid >= net
    OVERDUE  -- nothing paid and past due date
    """

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class BillingCycle(str, Enum):
    """How often a fee structure amount is charged.

    Allocations are monthly; other cycles are converted to a monthly
    equivalent by ``fees_kernel.domain.fee_math.to_monthly_amount``.
    """

    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    HALF_YEARLY = "HALF_YEARLY"
    YEARLY = "YEARLY"

    @property
    def months(self) -> int:
        return _CYCLE_MONTHS[self]


_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.HALF_YEARLY: 6,
    BillingCycle.YEARLY: 12,
}


class PaymentMethod(str, Enum):
    """Tender used for a payment."""

    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CARD = "CARD"
    CHEQUE = "CHEQUE"
    MOBILE_MONEY = "MOBILE_MONEY"
    OTHER = "OTHER"


class ItemKind(str, Enum):
    """Kind of catalog item a subscription points at."""

    COURSE = "COURSE"
    SERVICE = "SERVICE"
